from __future__ import annotations
import json
import os
import re
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Deque, Dict, List, Optional, Tuple

import numpy as np

from extensions import HookRegistry, RuntimeServices, build_default_services
from lexer import ASMError, QUOTE, Lexer
from parser import Instruction, Opcode, Parser, Program, SourceLocation


# Output of a program that never renders a message.
DEFAULT_OUTPUT = "-1"

DEFAULT_WORD_SIZE = 32
DEFAULT_HISTORY_SIZE = 1000

WORD_SIZES: Dict[int, Any] = {
    8: np.int8,
    16: np.int16,
    32: np.int32,
    64: np.int64,
}

REGISTER_PATTERN = re.compile(r"[a-z]+")
LITERAL_PATTERN = re.compile(r"-?(?:0|[1-9][0-9]*)")


def is_register(token: str) -> bool:
    return REGISTER_PATTERN.fullmatch(token) is not None


def is_literal(token: str) -> bool:
    return LITERAL_PATTERN.fullmatch(token) is not None


def truncating_div(a: int, b: int) -> int:
    """Integer division rounding toward zero, as machine ``idiv`` does."""
    q = abs(a) // abs(b)
    return q if (a < 0) == (b < 0) else -q


class ASMRuntimeError(ASMError):
    """Raised for runtime faults."""

    def __init__(
        self,
        message: str,
        *,
        location: Optional[SourceLocation] = None,
        rewrite_rule: Optional[str] = None,
        token: Optional[str] = None,
    ) -> None:
        super().__init__(message, location=location, rewrite_rule=rewrite_rule, token=token)
        self.step_index: Optional[int] = None


class ArgumentCountMismatchError(ASMRuntimeError):
    pass


class ExpectedRegisterArgumentError(ASMRuntimeError):
    pass


class InvalidOperandError(ASMRuntimeError):
    pass


class UnknownLabelError(ASMRuntimeError):
    pass


class EmptyCallStackError(ASMRuntimeError):
    pass


class InvalidMessageArgumentError(ASMRuntimeError):
    pass


class DivisionByZeroError(ASMRuntimeError):
    pass


class ArithmeticOverflowError(ASMRuntimeError):
    pass


class StepLimitError(ASMRuntimeError):
    pass


class CallDepthError(ASMRuntimeError):
    pass


class ExtensionError(ASMRuntimeError):
    pass


class RegisterBank:
    """Named signed registers of a fixed word size, zero until written."""

    def __init__(self, word_size: int = DEFAULT_WORD_SIZE) -> None:
        if word_size not in WORD_SIZES:
            sizes = ", ".join(str(size) for size in sorted(WORD_SIZES))
            raise ValueError(f"word_size must be one of {sizes}, got {word_size}")
        info = np.iinfo(WORD_SIZES[word_size])
        self.word_size = word_size
        self.min_value = int(info.min)
        self.max_value = int(info.max)
        self.values: Dict[str, int] = {}

    def get(self, name: str) -> int:
        return self.values.get(name, 0)

    def set(self, name: str, value: int) -> None:
        self.values[name] = self.check(value)

    def fits(self, value: int) -> bool:
        return self.min_value <= value <= self.max_value

    def check(self, value: int) -> int:
        if not self.fits(value):
            raise ArithmeticOverflowError(
                f"Result {value} does not fit in a {self.word_size}-bit register",
                token=str(value),
            )
        return value

    def snapshot(self) -> Dict[str, str]:
        return {name: str(value) for name, value in sorted(self.values.items())}

    def __len__(self) -> int:
        return len(self.values)


@dataclass
class StepRecord:
    """Machine state just before one instruction ran."""

    step: int
    pointer: int
    opcode: Opcode
    depth: int
    location: SourceLocation
    registers: Optional[Dict[str, str]] = None

    @property
    def state_id(self) -> str:
        return f"s_{self.step:06d}"


@dataclass
class Frame:
    """One CALL activation; the bottom frame is the program itself.

    ``last_step`` is the latest instruction executed while this frame was on
    top. For a caller that is its pending CALL. It is dropped together with
    the frame on RET.
    """

    label: str
    depth: int
    return_address: Optional[int] = None
    call_location: Optional[SourceLocation] = None
    last_step: Optional[StepRecord] = None


class ExecutionLog:
    """The most recent ``history_size`` steps, oldest first."""

    def __init__(self, history_size: int = DEFAULT_HISTORY_SIZE) -> None:
        self.records: Deque[StepRecord] = deque(maxlen=history_size)

    def record(self, frame: Frame, record: StepRecord) -> None:
        self.records.append(record)
        frame.last_step = record

    @property
    def last(self) -> Optional[StepRecord]:
        return self.records[-1] if self.records else None

    def __len__(self) -> int:
        return len(self.records)


InstructionImpl = Callable[[Instruction], None]


class Interpreter:
    def __init__(
        self,
        *,
        source: str,
        filename: str = "<string>",
        verbose: bool = False,
        word_size: int = DEFAULT_WORD_SIZE,
        max_steps: Optional[int] = None,
        max_call_depth: Optional[int] = None,
        history_size: int = DEFAULT_HISTORY_SIZE,
        services: Optional[RuntimeServices] = None,
    ) -> None:
        if max_steps is not None and max_steps < 1:
            raise ValueError("max_steps must be >= 1")
        if max_call_depth is not None and max_call_depth < 0:
            raise ValueError("max_call_depth must be >= 0")
        if history_size < 1:
            raise ValueError("history_size must be >= 1")
        self.source = source
        self.filename = filename if filename == "<string>" else os.path.abspath(filename)
        self.verbose = verbose
        self.word_size = word_size
        self.max_steps = max_steps
        self.max_call_depth = max_call_depth
        self.history_size = history_size
        self.services = services or build_default_services()
        self.hook_registry: HookRegistry = self.services.hook_registry

        self.table: Dict[Opcode, InstructionImpl] = {}
        self._register_arithmetic(Opcode.ADD, lambda a, b: a + b)
        self._register_arithmetic(Opcode.SUB, lambda a, b: a - b)
        self._register_arithmetic(Opcode.MUL, lambda a, b: a * b)
        self._register_arithmetic(Opcode.DIV, truncating_div, nonzero_operand=True)
        self._register_step(Opcode.INC, 1)
        self._register_step(Opcode.DEC, -1)
        self._register_branch(Opcode.JMP, lambda _: True)
        self._register_branch(Opcode.JNE, lambda c: c != 0)
        self._register_branch(Opcode.JE, lambda c: c == 0)
        self._register_branch(Opcode.JGE, lambda c: c >= 0)
        self._register_branch(Opcode.JG, lambda c: c > 0)
        self._register_branch(Opcode.JLE, lambda c: c <= 0)
        self._register_branch(Opcode.JL, lambda c: c < 0)
        self.table[Opcode.MOV] = self._mov
        self.table[Opcode.CMP] = self._cmp
        self.table[Opcode.CALL] = self._call
        self.table[Opcode.RET] = self._ret
        self.table[Opcode.MSG] = self._msg
        self.table[Opcode.END] = self._end

        self.program: Optional[Program] = None
        self._reset()

    def _reset(self) -> None:
        self.registers = RegisterBank(self.word_size)
        self.comparison = 0
        self.call_stack: List[Frame] = []
        self.message_pattern: Tuple[str, ...] = ()
        self.output = DEFAULT_OUTPUT
        self.halted_by_end = False
        self.pointer = 0
        self.steps = 0
        self.current: Optional[Instruction] = None
        self.log = ExecutionLog(self.history_size)

    @property
    def call_depth(self) -> int:
        return max(len(self.call_stack) - 1, 0)

    def _register_arithmetic(
        self,
        opcode: Opcode,
        func: Callable[[int, int], int],
        nonzero_operand: bool = False,
    ) -> None:
        def impl(instruction: Instruction) -> None:
            name = self._expect_register_args(instruction, 2)
            operand = self._resolve(instruction.args[1], instruction)
            if nonzero_operand and operand == 0:
                raise DivisionByZeroError(
                    f"Division by zero: '{instruction.args[1]}' is 0",
                    location=instruction.location,
                    rewrite_rule=opcode.name,
                    token=instruction.args[1],
                )
            self.registers.set(name, func(self.registers.get(name), operand))

        self.table[opcode] = impl

    def _register_step(self, opcode: Opcode, delta: int) -> None:
        def impl(instruction: Instruction) -> None:
            name = self._expect_register_args(instruction, 1)
            self.registers.set(name, self.registers.get(name) + delta)

        self.table[opcode] = impl

    def _register_branch(self, opcode: Opcode, predicate: Callable[[int], bool]) -> None:
        def impl(instruction: Instruction) -> None:
            self._expect_arg_count(instruction, 1)
            if predicate(self.comparison):
                self.pointer = self._label_index(instruction.args[0], instruction)

        self.table[opcode] = impl

    # Helpers
    def _expect_arg_count(self, instruction: Instruction, count: int) -> None:
        supplied = len(instruction.args)
        if supplied != count:
            plural = "argument" if count == 1 else "arguments"
            raise ArgumentCountMismatchError(
                f"{instruction.mnemonic} expects {count} {plural}, got {supplied}",
                location=instruction.location,
                rewrite_rule=instruction.opcode.name,
                token=str(supplied),
            )

    def _expect_register_args(self, instruction: Instruction, count: int) -> str:
        self._expect_arg_count(instruction, count)
        name = instruction.args[0]
        if not is_register(name):
            raise ExpectedRegisterArgumentError(
                f"{instruction.mnemonic} expects a register as first argument, got '{name}'",
                location=instruction.location,
                rewrite_rule=instruction.opcode.name,
                token=name,
            )
        return name

    def _resolve(self, token: str, instruction: Instruction) -> int:
        if is_register(token):
            return self.registers.get(token)
        if is_literal(token):
            value = int(token)
            if not self.registers.fits(value):
                raise InvalidOperandError(
                    f"Literal {token} does not fit in a {self.word_size}-bit register",
                    location=instruction.location,
                    rewrite_rule=instruction.opcode.name,
                    token=token,
                )
            return value
        raise InvalidOperandError(
            f"Invalid operand '{token}'",
            location=instruction.location,
            rewrite_rule=instruction.opcode.name,
            token=token,
        )

    def _label_index(self, label: str, instruction: Instruction) -> int:
        assert self.program is not None
        index = self.program.labels.get(label)
        if index is None:
            raise UnknownLabelError(
                f"Unknown label '{label}'",
                location=instruction.location,
                rewrite_rule=instruction.opcode.name,
                token=label,
            )
        return index

    # Instructions
    def _mov(self, instruction: Instruction) -> None:
        name = self._expect_register_args(instruction, 2)
        self.registers.set(name, self._resolve(instruction.args[1], instruction))

    def _cmp(self, instruction: Instruction) -> None:
        self._expect_arg_count(instruction, 2)
        left = self._resolve(instruction.args[0], instruction)
        right = self._resolve(instruction.args[1], instruction)
        self.comparison = left - right

    def _call(self, instruction: Instruction) -> None:
        self._expect_arg_count(instruction, 1)
        label = instruction.args[0]
        target = self._label_index(label, instruction)
        if self.max_call_depth is not None and self.call_depth >= self.max_call_depth:
            raise CallDepthError(
                f"Call depth limit of {self.max_call_depth} exceeded",
                location=instruction.location,
                rewrite_rule="CALL",
                token=label,
            )
        frame = Frame(label, len(self.call_stack), self.pointer, instruction.location)
        self.call_stack.append(frame)
        self.pointer = target

    def _ret(self, instruction: Instruction) -> None:
        if len(self.call_stack) <= 1:
            raise EmptyCallStackError(
                "RET without a matching CALL",
                location=instruction.location,
                rewrite_rule="RET",
            )
        frame = self.call_stack.pop()
        assert frame.return_address is not None
        self.pointer = frame.return_address

    def _msg(self, instruction: Instruction) -> None:
        self.message_pattern = instruction.args

    def _end(self, instruction: Instruction) -> None:
        self.output = self._render_message(instruction)
        self.halted_by_end = True

    def _render_message(self, instruction: Instruction) -> str:
        if not self.message_pattern:
            return DEFAULT_OUTPUT
        parts: List[str] = []
        for arg in self.message_pattern:
            if arg.startswith(QUOTE):
                close = arg.rfind(QUOTE)
                if close == 0:
                    raise InvalidMessageArgumentError(
                        f"Unterminated quoted text {arg}",
                        location=instruction.location,
                        rewrite_rule="MSG",
                        token=arg,
                    )
                parts.append(arg[1:close])
            elif is_register(arg):
                parts.append(str(self.registers.get(arg)))
            else:
                raise InvalidMessageArgumentError(
                    f"Invalid message argument '{arg}'",
                    location=instruction.location,
                    rewrite_rule="MSG",
                    token=arg,
                )
        return "".join(parts)

    # Driver
    def parse(self) -> Program:
        lines = Lexer(self.source, self.filename).tokenize()
        return Parser(lines, self.filename).parse()

    def run(self) -> str:
        return self.execute(self.parse())

    def execute(self, program: Program) -> str:
        self._reset()
        self.program = program
        self.call_stack.append(Frame("<top-level>", 0))
        try:
            self._emit("program_start", program)
            self._execute_instructions(program.instructions)
        except ASMRuntimeError as error:
            self._annotate(error)
            self._emit("on_error", error)
            raise
        except Exception as exc:
            self._emit("on_error", exc)
            # Python-level faults are reported as interpreter tracebacks too.
            wrapped = ASMRuntimeError(f"Internal interpreter error: {exc}", rewrite_rule="internal")
            self._annotate(wrapped)
            raise wrapped from exc
        self._emit("program_end", self.output)
        return self.output

    def _annotate(self, error: ASMRuntimeError) -> None:
        current = self.current
        if current is not None:
            if error.location is None:
                error.location = current.location
            if error.rewrite_rule is None:
                error.rewrite_rule = current.opcode.name
        last = self.log.last
        if last is not None:
            error.step_index = last.step

    def _execute_instructions(self, instructions: Tuple[Instruction, ...]) -> None:
        count = len(instructions)
        table = self.table
        emit = self._emit
        record_step = self._record_step
        registry = self.hook_registry
        max_steps = self.max_steps
        # Handlers added while the program runs take effect on the next run.
        watch_before = registry.has_handlers("before_instruction")
        watch_after = registry.has_handlers("after_instruction")
        sample = bool(registry.step_rules)

        while self.pointer < count:
            instruction = instructions[self.pointer]
            self.current = instruction
            if max_steps is not None and self.steps >= max_steps:
                raise StepLimitError(
                    f"Step limit of {max_steps} instructions exceeded",
                    location=instruction.location,
                    rewrite_rule=instruction.opcode.name,
                )
            self.steps += 1
            if watch_before:
                emit("before_instruction", instruction)
            record = record_step(instruction)
            if sample:
                self._guarded("Extension step rule", registry.run_step_rules, self, record)
            self.pointer += 1
            table[instruction.opcode](instruction)
            if watch_after:
                emit("after_instruction", instruction)
            if self.halted_by_end:
                return
        # Ran off the end without END.
        self.output = DEFAULT_OUTPUT

    def _record_step(self, instruction: Instruction) -> StepRecord:
        record = StepRecord(
            step=self.steps,
            pointer=self.pointer,
            opcode=instruction.opcode,
            depth=len(self.call_stack) - 1,
            location=instruction.location,
            registers=self.registers.snapshot() if self.verbose else None,
        )
        self.log.record(self.call_stack[-1], record)
        return record

    def _emit(self, event: str, *payload: Any) -> None:
        self._guarded(f"Extension hook '{event}'", self.hook_registry.emit, event, self, *payload)

    def _guarded(self, what: str, func: Callable[..., None], *args: Any) -> None:
        try:
            func(*args)
        except ASMRuntimeError:
            raise
        except Exception as exc:
            location = self.current.location if self.current is not None else None
            raise ExtensionError(f"{what} failed: {exc}", location=location, rewrite_rule="EXT") from exc


def run_program(source: str, **options: Any) -> str:
    """Parse and execute ``source``, returning the rendered message."""
    return Interpreter(source=source, **options).run()


@dataclass
class TracebackFrame:
    label: str
    depth: int
    return_address: Optional[int]
    location: Optional[SourceLocation]
    step: Optional[StepRecord]


class TracebackFormatter:
    """Renders a runtime error over the CALL frames live when it was raised.

    Callers are shown at their pending CALL and the innermost frame at the
    faulting instruction. ``ip`` values are instruction indices, so a
    frame's return address can be matched against the CALL above it.
    """

    def __init__(self, interpreter: Interpreter) -> None:
        self.interpreter = interpreter

    def build_frames(self) -> List[TracebackFrame]:
        frames: List[TracebackFrame] = []
        for frame in self.interpreter.call_stack:
            step = frame.last_step
            location = step.location if step is not None else frame.call_location
            frames.append(TracebackFrame(frame.label, frame.depth, frame.return_address, location, step))
        return frames

    def format_text(self, error: ASMRuntimeError, verbose: bool) -> str:
        lines = ["Traceback (most recent call last):"]
        for frame in self.build_frames():
            if frame.location is None:
                lines.append(f"  <unknown location> in {frame.label}")
            else:
                lines.append(f"  File \"{frame.location.file}\", line {frame.location.line}, in {frame.label}")
                lines.append(f"    {frame.location.statement}")
            step = frame.step
            if step is None:
                continue
            where = f"    [{step.state_id}] ip {step.pointer} {step.opcode.name}, depth {frame.depth}"
            if frame.return_address is not None:
                where += f", returns to ip {frame.return_address}"
            lines.append(where)
            if verbose and step.registers is not None:
                registers = " ".join(f"{name}={value}" for name, value in step.registers.items())
                lines.append(f"    Registers: {registers or '(all zero)'}")
        rule = error.rewrite_rule or "runtime"
        lines.append(f"{error.__class__.__name__}: {error.message} (rewrite: {rule})")
        return "\n".join(lines)

    def to_json(self, error: ASMRuntimeError) -> str:
        frames: List[Dict[str, Any]] = []
        for frame in self.build_frames():
            item: Dict[str, Any] = {
                "label": frame.label,
                "depth": frame.depth,
                "return_address": frame.return_address,
            }
            if frame.location is not None:
                item["source_location"] = {
                    "file": frame.location.file,
                    "line": frame.location.line,
                    "column": frame.location.column,
                    "statement": frame.location.statement,
                }
            step = frame.step
            if step is not None:
                item["step"] = step.step
                item["state_id"] = step.state_id
                item["pointer"] = step.pointer
                item["opcode"] = step.opcode.name
                if step.registers is not None:
                    item["registers"] = step.registers
            frames.append(item)
        data = {
            "error": {
                "type": error.__class__.__name__,
                "message": error.message,
                "token": error.token,
                "rewrite_rule": error.rewrite_rule,
                "failing_step_index": error.step_index,
            },
            "traceback": frames,
        }
        return json.dumps(data, indent=2)
