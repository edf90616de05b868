"""
Runtime Validation

After the dev server announces readiness, a small node script inside the
sandbox requests the root page. A 5xx response or an empty body means the
app is broken even though the process is alive.

Warm-up failures (refused connections, timeouts, empty first render) are
retried and finally soft-accepted. Anything that looks like a code error
fails the build.
"""

import shlex
from typing import Tuple


RUNTIME_VALIDATION_OK = "RUNTIME_VALIDATION_OK"
EMPTY_HTML_MARKER = "empty-runtime-html"

RETRYABLE_VALIDATION_MARKERS: Tuple[str, ...] = (
    "operation was aborted",
    "timed out",
    "timeout",
    "fetch failed",
    "econnrefused",
    "econnreset",
    "socket hang up",
    EMPTY_HTML_MARKER,
)

# Never soft-accepted, even when the output also looks like a warm-up failure
HARD_VALIDATION_MARKERS: Tuple[str, ...] = (
    "module not found",
    "cannot find module",
    "syntaxerror",
    "typeerror",
    "referenceerror",
)

_SCRIPT = (
    "const http=require('http');"
    "const req=http.get({host:'127.0.0.1',port:%(port)d,path:'/',timeout:%(timeout)d},(res)=>{"
    "let body='';res.setEncoding('utf8');"
    "res.on('data',(c)=>{if(body.length<20000){body+=c;}});"
    "res.on('end',()=>{"
    "if(res.statusCode>=500){console.error('status '+res.statusCode+': '+body.slice(0,500));process.exit(1);}"
    "if(!body.trim()){console.error('%(empty)s');process.exit(1);}"
    "console.log('%(ok)s status='+res.statusCode);});});"
    "req.on('timeout',()=>{req.destroy(new Error('request timed out'));});"
    "req.on('error',(e)=>{console.error(e.message);process.exit(1);});"
)


def build_runtime_validation_command(port: int, fetch_timeout_ms: int) -> str:
    script = _SCRIPT % {
        "port": port,
        "timeout": fetch_timeout_ms,
        "empty": EMPTY_HTML_MARKER,
        "ok": RUNTIME_VALIDATION_OK,
    }
    return f"node -e {shlex.quote(script)}"


def is_runtime_validation_command(command: str) -> bool:
    return command.startswith("node -e ") and RUNTIME_VALIDATION_OK in command


def is_retryable_validation_failure(details: str) -> bool:
    normalized = (details or "").lower()
    return any(marker in normalized for marker in RETRYABLE_VALIDATION_MARKERS)


def allow_soft_validation_failure(details: str) -> bool:
    """True when the page is most likely still compiling rather than broken"""
    normalized = (details or "").lower()
    if any(marker in normalized for marker in HARD_VALIDATION_MARKERS):
        return False
    return is_retryable_validation_failure(details)
