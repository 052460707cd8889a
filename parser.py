from __future__ import annotations
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Tuple

from lexer import ASMParseError, SourceLine, Token


@dataclass(frozen=True)
class SourceLocation:
    file: str
    line: int
    column: int
    statement: str


class UnknownInstructionError(ASMParseError):
    """Raised for a mnemonic outside the instruction set."""


class Opcode(Enum):
    MOV = "mov"
    INC = "inc"
    DEC = "dec"
    ADD = "add"
    SUB = "sub"
    MUL = "mul"
    DIV = "div"
    JMP = "jmp"
    CMP = "cmp"
    JNE = "jne"
    JE = "je"
    JGE = "jge"
    JG = "jg"
    JLE = "jle"
    JL = "jl"
    CALL = "call"
    MSG = "msg"
    RET = "ret"
    END = "end"


MNEMONICS: Dict[str, Opcode] = {op.value: op for op in Opcode}


@dataclass(frozen=True)
class Instruction:
    opcode: Opcode
    args: Tuple[str, ...]
    location: SourceLocation

    @property
    def mnemonic(self) -> str:
        return self.opcode.value


@dataclass
class Program:
    instructions: Tuple[Instruction, ...]
    labels: Dict[str, int] = field(default_factory=dict)
    source_file: str = "<string>"

    def __len__(self) -> int:
        return len(self.instructions)


class Parser:
    def __init__(self, lines: List[SourceLine], filename: str = "<string>") -> None:
        self.lines = lines
        self.filename = filename

    def parse(self) -> Program:
        instructions: List[Instruction] = []
        labels: Dict[str, int] = {}
        for source_line in self.lines:
            head = source_line.tokens[0]
            if head.type == "LABEL":
                labels[head.value] = len(instructions)
                continue
            instructions.append(self._parse_instruction(source_line, head))
        return Program(instructions=tuple(instructions), labels=labels, source_file=self.filename)

    def _parse_instruction(self, source_line: SourceLine, head: Token) -> Instruction:
        location = self._location_from_token(source_line, head)
        opcode = MNEMONICS.get(head.value)
        if opcode is None:
            raise UnknownInstructionError(
                f"Unknown instruction '{head.value}' at {self.filename}:{head.line}:{head.column}",
                location=location,
                rewrite_rule="PARSE",
                token=head.value,
            )
        args = tuple(token.value for token in source_line.tokens[1:])
        return Instruction(opcode=opcode, args=args, location=location)

    def _location_from_token(self, source_line: SourceLine, token: Token) -> SourceLocation:
        return SourceLocation(file=self.filename, line=token.line, column=token.column, statement=source_line.statement)
