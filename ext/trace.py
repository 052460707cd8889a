"""regasm extension: instruction tracer.

Writes one line per executed instruction to stderr:

    [s_000003] ip 8 depth 1 proc_func  line 12  mul c, a  | a=2 b=10 c=4 d=8

``ip`` is the instruction index. Register values are those in effect
before the instruction runs.
"""

from __future__ import annotations

import sys
from typing import Any

from extensions import ExtensionAPI

REGASM_EXTENSION_NAME = "trace"
REGASM_EXTENSION_API_VERSION = 1


def _format_registers(interpreter: Any) -> str:
    return " ".join(f"{k}={v}" for k, v in interpreter.registers.snapshot().items())


def _trace(interpreter: Any, instruction: Any) -> None:
    frame = interpreter.call_stack[-1]
    text = f"{instruction.mnemonic} {', '.join(instruction.args)}".rstrip()
    sys.stderr.write(
        f"[s_{interpreter.steps:06d}] ip {interpreter.pointer} depth {frame.depth} {frame.label}"
        f"  line {instruction.location.line}  {text}  | {_format_registers(interpreter)}\n"
    )


def _finish(interpreter: Any, output: str) -> None:
    sys.stderr.write(f"halt after {interpreter.steps} steps: {output}\n")


def regasm_register(ext: ExtensionAPI) -> None:
    ext.metadata(name="trace", version="0.1.0")
    ext.on_event("before_instruction", _trace)
    ext.on_event("program_end", _finish)
