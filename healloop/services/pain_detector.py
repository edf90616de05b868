"""
Pain Detector - log-based failure detection for sandbox output.

Every output line of the dev server (and any browser console error forwarded
to us) is matched against an ordered table of failure signatures. The first
rule that matches wins and produces a PainSignal carrying the rule's type,
severity and suggestion.

Identical signals are debounced: a signal key (type + first 50 chars of the
match) seen within the debounce window is suppressed. The dedupe cache is
purged on every insert, so memory stays bounded without a background timer.
"""

import random
import re
import string
import time
from collections import OrderedDict
from dataclasses import dataclass, asdict, replace
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Pattern, Sequence

from healloop.core.config import settings
from healloop.core.logging_config import logger


class PainType(str, Enum):
    BUILD = "BUILD_ERROR"
    RUNTIME = "RUNTIME_ERROR"
    DEPENDENCY = "DEPENDENCY_ERROR"
    TYPE = "TYPE_ERROR"
    SYNTAX = "SYNTAX_ERROR"
    HYDRATION = "HYDRATION_ERROR"
    NETWORK = "NETWORK_ERROR"


class Severity(str, Enum):
    CRITICAL = "critical"
    WARNING = "warning"
    INFO = "info"


@dataclass(frozen=True)
class PainRule:
    type: PainType
    severity: Severity
    pattern: Pattern[str]
    suggestion: Optional[str] = None


@dataclass(frozen=True)
class PainSignal:
    id: str
    type: PainType
    severity: Severity
    message: str
    context: str
    timestamp: int
    file: Optional[str] = None
    line: Optional[int] = None
    suggestion: Optional[str] = None

    @property
    def is_critical(self) -> bool:
        return self.severity == Severity.CRITICAL

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["type"] = self.type.value
        data["severity"] = self.severity.value
        return data


def _rule(pain_type: PainType, severity: Severity, pattern: str, suggestion: str) -> PainRule:
    return PainRule(pain_type, severity, re.compile(pattern), suggestion)


# Order matters: first match wins. The generic "Error: " rule must stay below
# every more specific error rule.
DEFAULT_PAIN_RULES: List[PainRule] = [
    # ========== Build Errors ==========
    _rule(PainType.BUILD, Severity.CRITICAL, r"Failed to compile",
          "Check the error message below for syntax issues or missing imports."),
    _rule(PainType.BUILD, Severity.CRITICAL, r"Build failed because of webpack errors",
          "Review webpack configuration and module resolution."),
    _rule(PainType.BUILD, Severity.CRITICAL, r"error TS\d+: (.*)",
          "Fix the TypeScript error by checking types and imports."),

    # ========== Dependency Errors ==========
    _rule(PainType.DEPENDENCY, Severity.CRITICAL, r"Module not found: Can't resolve '([^']+)'",
          "Run npm install for the missing package."),
    _rule(PainType.DEPENDENCY, Severity.CRITICAL, r"Cannot find module '([^']+)'",
          "The module is missing. Install it with npm install."),
    _rule(PainType.DEPENDENCY, Severity.CRITICAL, r"ERR! peer dep missing",
          "Install missing peer dependencies."),

    # ========== Syntax Errors ==========
    _rule(PainType.SYNTAX, Severity.CRITICAL, r"SyntaxError: (.*)",
          "Check for typos, missing brackets, or invalid syntax."),
    _rule(PainType.SYNTAX, Severity.CRITICAL, r"Parsing error: (.*)",
          "Fix the parsing error - likely a syntax issue."),
    _rule(PainType.SYNTAX, Severity.CRITICAL, r"Unexpected token",
          "There is unexpected syntax. Check for typos."),

    # ========== Type Errors ==========
    _rule(PainType.TYPE, Severity.CRITICAL, r"TypeError: (.*)",
          "A type mismatch occurred. Check variable types."),
    _rule(PainType.TYPE, Severity.CRITICAL, r"Type '(.*)' is not assignable to type '(.*)'",
          "Fix the type mismatch by updating the value or type annotation."),

    # ========== Runtime Errors ==========
    _rule(PainType.RUNTIME, Severity.CRITICAL, r"ReferenceError: (.*) is not defined",
          "The variable or function is not defined. Check imports and scope."),
    _rule(PainType.RUNTIME, Severity.CRITICAL, r"Error: (.*)",
          "A runtime error occurred. Check the stack trace."),
    _rule(PainType.RUNTIME, Severity.CRITICAL, r"Uncaught Error",
          "An unhandled error occurred. Add try-catch or fix the root cause."),

    # ========== React / Next.js ==========
    _rule(PainType.HYDRATION, Severity.CRITICAL, r"Hydration failed because",
          "Server and client HTML mismatch. Check for browser-only code or dynamic content."),
    _rule(PainType.HYDRATION, Severity.CRITICAL, r"Text content does not match server-rendered HTML",
          "Use useEffect for browser-only operations or add suppressHydrationWarning."),
    _rule(PainType.HYDRATION, Severity.CRITICAL, r"There was an error while hydrating",
          "Check for window/document access during SSR. Use dynamic imports with ssr: false."),
    _rule(PainType.RUNTIME, Severity.CRITICAL, r"window is not defined",
          "Window is only available in browser. Use useEffect or dynamic import."),
    _rule(PainType.RUNTIME, Severity.CRITICAL, r"document is not defined",
          "Document is only available in browser. Use useEffect or dynamic import."),

    # ========== Network Errors ==========
    _rule(PainType.NETWORK, Severity.WARNING, r"ECONNREFUSED",
          "Connection refused. Check if the server is running."),
    _rule(PainType.NETWORK, Severity.WARNING, r"ETIMEDOUT",
          "Connection timed out. Check network connectivity."),
]

NOISE_MARKERS = ("[webpack.cache.Pack]", "Compiling")
FILE_LINE_PATTERN = re.compile(r"(?:at |in |from )([^\s:]+):(\d+)")

MIN_LINE_LENGTH = 5
KEY_MATCH_CHARS = 50
CONTEXT_CHARS = 500
BROWSER_MESSAGE_CHARS = 200


def _new_signal_id(now_ms: int) -> str:
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=5))
    return f"pain-{now_ms}-{suffix}"


class PainDetector:
    """
    Scans output lines for failure signatures.

    One detector per monitored sandbox: the dedupe cache is per instance.
    `clock` returns seconds (time.time by default) and is injectable for tests.
    """

    def __init__(
        self,
        rules: Optional[Sequence[PainRule]] = None,
        debounce_seconds: Optional[float] = None,
        max_entries: Optional[int] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.rules: List[PainRule] = list(rules if rules is not None else DEFAULT_PAIN_RULES)
        self.debounce_seconds = debounce_seconds if debounce_seconds is not None else settings.PAIN_DEBOUNCE_SECONDS
        self.max_entries = max_entries if max_entries is not None else settings.PAIN_CACHE_MAX_ENTRIES
        self._clock = clock
        self._recent: "OrderedDict[str, float]" = OrderedDict()

    @property
    def cache_size(self) -> int:
        return len(self._recent)

    def clear(self) -> None:
        """Reset the debounce cache"""
        self._recent.clear()

    def _match(self, line: str):
        for rule in self.rules:
            match = rule.pattern.search(line)
            if match:
                return rule, match
        return None, None

    def _is_duplicate(self, key: str, now: float) -> bool:
        last_seen = self._recent.get(key)
        return last_seen is not None and (now - last_seen) < self.debounce_seconds

    def _remember(self, key: str, now: float) -> None:
        self._recent.pop(key, None)
        self._recent[key] = now

        cutoff = now - self.debounce_seconds * 2
        for stale in [k for k, seen in self._recent.items() if seen < cutoff]:
            del self._recent[stale]

        while len(self._recent) > self.max_entries:
            self._recent.popitem(last=False)

    def analyze_log(self, line: str) -> Optional[PainSignal]:
        """Return a PainSignal for a failing output line, or None"""
        if not line or len(line.strip()) < MIN_LINE_LENGTH:
            return None
        if any(marker in line for marker in NOISE_MARKERS):
            return None

        rule, match = self._match(line)
        if rule is None:
            return None

        matched = match.group(0)
        key = f"{rule.type.value}:{matched[:KEY_MATCH_CHARS]}"
        now = self._clock()

        if self._is_duplicate(key, now):
            return None
        self._remember(key, now)

        file_match = FILE_LINE_PATTERN.search(line)
        now_ms = int(now * 1000)

        signal = PainSignal(
            id=_new_signal_id(now_ms),
            type=rule.type,
            severity=rule.severity,
            message=matched,
            context=line[:CONTEXT_CHARS],
            file=file_match.group(1) if file_match else None,
            line=int(file_match.group(2)) if file_match else None,
            suggestion=rule.suggestion,
            timestamp=now_ms,
        )
        logger.log_pain_signal(signal.type.value, signal.severity.value, signal.message, signal_id=signal.id)
        return signal

    def analyze_browser_error(self, message: str) -> Optional[PainSignal]:
        """
        Analyze a browser console error.

        Browser errors are runtime errors unless they are hydration mismatches.
        Anything mentioning "error" that no rule recognises still becomes a
        runtime warning so it shows up, but it never triggers a heal.
        """
        signal = self.analyze_log(message)
        if signal is not None:
            if signal.type != PainType.HYDRATION:
                signal = replace(signal, type=PainType.RUNTIME)
            return signal

        if message and "error" in message.lower():
            now_ms = int(self._clock() * 1000)
            return PainSignal(
                id=_new_signal_id(now_ms),
                type=PainType.RUNTIME,
                severity=Severity.WARNING,
                message=message[:BROWSER_MESSAGE_CHARS],
                context=f"Browser console error: {message}",
                timestamp=now_ms,
            )
        return None


def build_failure_signal(
    message: str,
    context: str,
    suggestion: Optional[str] = None,
    clock: Callable[[], float] = time.time,
) -> PainSignal:
    """Pain signal for a pipeline failure that never showed up as an output line"""
    now_ms = int(clock() * 1000)
    return PainSignal(
        id=_new_signal_id(now_ms),
        type=PainType.BUILD,
        severity=Severity.CRITICAL,
        message=message,
        context=context[:CONTEXT_CHARS],
        suggestion=suggestion,
        timestamp=now_ms,
    )


def format_for_ai(signal: PainSignal) -> str:
    """Render a pain signal as the prompt for the next generation cycle"""
    parts = [
        "SYSTEM ALERT: The execution environment reported a critical error.",
        "",
        f"**Type:** {signal.type.value}",
        f"**Severity:** {signal.severity.value.upper()}",
        f"**Error:** {signal.message}",
    ]
    if signal.file:
        location = f"{signal.file}:{signal.line}" if signal.line else signal.file
        parts.append(f"**File:** {location}")
    if signal.suggestion:
        parts.append(f"**Suggested Fix:** {signal.suggestion}")

    parts.extend([
        "",
        "**Context:**",
        "```",
        signal.context,
        "```",
        "",
        "Please analyze this error and fix the code immediately. Do not ask for permission. Just fix it.",
    ])
    return "\n".join(parts)
