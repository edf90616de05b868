from anthropic import AsyncAnthropic
from typing import Optional, Dict, List, Any
import time
import httpx

from healloop.core.config import settings
from healloop.core.logging_config import logger
from healloop.services.execution_retry import (
    AgentExecutor,
    AgentResult,
    ToolCall,
    TextDeltaCallback,
    ToolCallCallback,
    ToolResultCallback,
)

REQUEST_TIMEOUT = float(settings.CLAUDE_REQUEST_TIMEOUT)
CONNECT_TIMEOUT = float(settings.CLAUDE_CONNECT_TIMEOUT)

# USD per million tokens (input, output)
MODEL_PRICING = {
    "opus": (15.0, 75.0),
    "sonnet": (3.0, 15.0),
    "haiku": (0.8, 4.0),
}

DEFAULT_SYSTEM_PROMPT = """You are a senior web engineer working inside a project workspace.
Write complete, runnable files with the provided tools. Prefer editing existing files over
rewriting them. Do not describe changes you have not made with a tool call."""

FILE_TOOLS: List[Dict[str, Any]] = [
    {
        "name": "create_file",
        "description": "Create or overwrite a file in the project workspace.",
        "input_schema": {
            "type": "object",
            "properties": {
                "path": {"type": "string", "description": "Project-relative path"},
                "content": {"type": "string", "description": "Full file content"},
            },
            "required": ["path", "content"],
        },
    },
    {
        "name": "edit_file",
        "description": "Replace one exact occurrence of old_text with new_text in a file.",
        "input_schema": {
            "type": "object",
            "properties": {
                "path": {"type": "string"},
                "old_text": {"type": "string"},
                "new_text": {"type": "string"},
            },
            "required": ["path", "old_text", "new_text"],
        },
    },
    {
        "name": "delete_file",
        "description": "Delete a file from the project workspace.",
        "input_schema": {
            "type": "object",
            "properties": {"path": {"type": "string"}},
            "required": ["path"],
        },
    },
    {
        "name": "read_file",
        "description": "Read a file from the project workspace.",
        "input_schema": {
            "type": "object",
            "properties": {"path": {"type": "string"}},
            "required": ["path"],
        },
    },
    {
        "name": "list_files",
        "description": "List every file path in the project workspace.",
        "input_schema": {"type": "object", "properties": {}},
    },
]


def calculate_cost(model: str, input_tokens: int, output_tokens: int) -> float:
    """Estimate request cost in USD from the model family"""
    family = next((name for name in MODEL_PRICING if name in model.lower()), "sonnet")
    input_price, output_price = MODEL_PRICING[family]
    return round((input_tokens * input_price + output_tokens * output_price) / 1_000_000, 6)


class ClaudeAgentExecutor(AgentExecutor):
    """
    Agent executor backed by the Claude Messages API with file tools.

    Tool calls mutate `files` (path -> content), which is the file set handed
    to the sandbox once the turn completes. API errors propagate unchanged so
    the retry engine can classify them.
    """

    def __init__(
        self,
        files: Optional[Dict[str, str]] = None,
        client: Optional[AsyncAnthropic] = None,
        model: Optional[str] = None,
        system_prompt: Optional[str] = None,
        max_steps: Optional[int] = None,
    ):
        self.files: Dict[str, str] = files if files is not None else {}
        self.model = model or settings.CLAUDE_MODEL
        self.system_prompt = system_prompt or DEFAULT_SYSTEM_PROMPT
        self.max_steps = max_steps or settings.CLAUDE_MAX_TOOL_STEPS

        if client is None:
            client = AsyncAnthropic(
                api_key=settings.ANTHROPIC_API_KEY,
                timeout=httpx.Timeout(
                    connect=CONNECT_TIMEOUT,
                    read=REQUEST_TIMEOUT,
                    write=REQUEST_TIMEOUT,
                    pool=REQUEST_TIMEOUT
                ),
            )
        self.async_client = client

    def _run_tool(self, name: str, args: Dict[str, Any]) -> str:
        path = str(args.get("path", "")).strip()

        if name == "list_files":
            return "\n".join(sorted(self.files)) or "(empty workspace)"
        if not path:
            return "Error: path is required"

        if name == "create_file":
            self.files[path] = str(args.get("content", ""))
            return f"Created {path}"

        if name == "edit_file":
            if path not in self.files:
                return f"Error: {path} does not exist"
            old_text = str(args.get("old_text", ""))
            if not old_text or old_text not in self.files[path]:
                return f"Error: text to replace not found in {path}"
            self.files[path] = self.files[path].replace(old_text, str(args.get("new_text", "")), 1)
            return f"Edited {path}"

        if name == "delete_file":
            if self.files.pop(path, None) is None:
                return f"Error: {path} does not exist"
            return f"Deleted {path}"

        if name == "read_file":
            if path not in self.files:
                return f"Error: {path} does not exist"
            return self.files[path]

        return f"Error: unknown tool {name}"

    async def execute_agent(
        self,
        agent_id: str,
        task: str,
        *,
        on_text_delta: Optional[TextDeltaCallback] = None,
        on_tool_call: Optional[ToolCallCallback] = None,
        on_tool_result: Optional[ToolResultCallback] = None,
        options: Optional[Dict[str, Any]] = None,
    ) -> AgentResult:
        options = options or {}
        messages: List[Dict[str, Any]] = [{"role": "user", "content": task}]
        tool_calls: List[ToolCall] = []
        output_parts: List[str] = []
        input_tokens = output_tokens = 0

        logger.info(f"Claude agent turn: agent={agent_id}, model={self.model}, task_len={len(task)}")

        for _ in range(options.get("max_steps", self.max_steps)):
            async with self.async_client.messages.stream(
                model=self.model,
                max_tokens=options.get("max_tokens", settings.CLAUDE_MAX_TOKENS),
                temperature=settings.CLAUDE_TEMPERATURE,
                system=self.system_prompt,
                tools=FILE_TOOLS,
                messages=messages,
            ) as stream:
                async for text in stream.text_stream:
                    output_parts.append(text)
                    if on_text_delta:
                        on_text_delta(text)
                final_message = await stream.get_final_message()

            input_tokens += final_message.usage.input_tokens
            output_tokens += final_message.usage.output_tokens

            assistant_content: List[Dict[str, Any]] = []
            tool_uses = []
            for block in final_message.content:
                if block.type == "text":
                    assistant_content.append({"type": "text", "text": block.text})
                elif block.type == "tool_use":
                    assistant_content.append(
                        {"type": "tool_use", "id": block.id, "name": block.name, "input": block.input}
                    )
                    tool_uses.append(block)
            messages.append({"role": "assistant", "content": assistant_content})

            if not tool_uses:
                break

            results = []
            for block in tool_uses:
                call = ToolCall(id=block.id, name=block.name, args=dict(block.input or {}))
                tool_calls.append(call)
                if on_tool_call:
                    on_tool_call(call)

                started = time.monotonic()
                output = self._run_tool(call.name, call.args)
                duration_ms = (time.monotonic() - started) * 1000
                if on_tool_result:
                    on_tool_result(call.id, call.name, output, duration_ms)

                results.append({"type": "tool_result", "tool_use_id": call.id, "content": output})
            messages.append({"role": "user", "content": results})

        logger.log_agent_event(agent_id, f"turn finished with {len(tool_calls)} tool calls",
                               tokens_used=input_tokens + output_tokens)

        return AgentResult(
            success=True,
            output="".join(output_parts),
            tool_calls=tool_calls,
            usage={
                "input_tokens": input_tokens,
                "output_tokens": output_tokens,
                "estimated_cost": calculate_cost(self.model, input_tokens, output_tokens),
                "provider": "anthropic",
            },
        )
