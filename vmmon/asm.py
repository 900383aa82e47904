#!/usr/bin/env python3
"""Text assembler for vmmon units.

Source format::

    ; comment
    .global limit = 5
    .func fib n            ; name followed by parameter names
    .locals tmp            ; extra local slots
    .line 3                ; source line for the following instructions
        RESUME 0
        LOAD_FAST n
        LOAD_CONST 2
        COMPARE_OP <
        POP_JUMP_IF_FALSE small
    small:
        ...
    .handler try_start try_end on_error 0
    .end

Every ``.func`` becomes a :class:`~vmmon.code.CodeUnit`; the module globals
map each function name to a :class:`~vmmon.code.Function`. ``RESUME 0`` is
inserted when a function does not start with ``RESUME`` and ``RESUME 1`` is
inserted after a ``YIELD_VALUE`` that is not followed by one.
"""

from __future__ import annotations

import ast
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from . import opcodes as op
from .code import CodeUnit, ExceptionEntry, Function, Instruction, Module
from .errors import AssemblyError

LABEL_RE = re.compile(r"^([A-Za-z_.][A-Za-z0-9_.$]*):")
SYMBOL_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def parse_int(token: str, *, line: Optional[int] = None) -> int:
    token = token.strip()
    try:
        if token.lower().startswith(("0x", "-0x")):
            return int(token, 16)
        if token.lower().startswith("0b"):
            return int(token, 2)
        return int(token, 10)
    except ValueError:
        raise AssemblyError(f"expected integer, got '{token}'", line=line) from None


def parse_literal(token: str, *, line: Optional[int] = None) -> Any:
    try:
        return ast.literal_eval(token.strip())
    except (ValueError, SyntaxError):
        raise AssemblyError(f"bad constant literal '{token}'", line=line) from None


def _strip_comment(raw: str) -> str:
    # ';' starts a comment unless it sits inside a quoted constant.
    quote: Optional[str] = None
    for idx, ch in enumerate(raw):
        if quote:
            if ch == quote:
                quote = None
        elif ch in "'\"":
            quote = ch
        elif ch == ";":
            return raw[:idx]
    return raw


@dataclass(eq=False)
class _PendingInstruction:
    opcode: int
    operand: str
    line: Optional[int]
    source_line: int


@dataclass
class _FunctionBuilder:
    name: str
    params: List[str]
    source_line: int
    locals: List[str] = field(default_factory=list)
    is_generator: bool = False
    current_line: Optional[int] = None
    body: List[_PendingInstruction] = field(default_factory=list)
    # Labels bind to the instruction that follows them (None: end of body).
    labels: Dict[str, Optional[_PendingInstruction]] = field(default_factory=dict)
    unbound: List[str] = field(default_factory=list)
    handlers: List[Tuple[str, str, str, int, int]] = field(default_factory=list)
    consts: List[Any] = field(default_factory=list)
    names: List[str] = field(default_factory=list)
    offsets: Dict[int, int] = field(default_factory=dict)

    def append(self, pending: _PendingInstruction) -> None:
        for label in self.unbound:
            self.labels[label] = pending
        self.unbound.clear()
        self.body.append(pending)

    def label_offset(self, label: str) -> int:
        target = self.labels[label]
        if target is None:
            return len(self.body)
        return self.offsets[id(target)]

    def const_index(self, value: Any) -> int:
        for idx, existing in enumerate(self.consts):
            if type(existing) is type(value) and existing == value:
                return idx
        self.consts.append(value)
        return len(self.consts) - 1

    def name_index(self, name: str) -> int:
        if name not in self.names:
            self.names.append(name)
        return self.names.index(name)

    @property
    def varnames(self) -> List[str]:
        return self.params + [name for name in self.locals if name not in self.params]


def _normalise_body(builder: _FunctionBuilder) -> None:
    """Insert implicit RESUME instructions and compute final offsets."""
    body = builder.body
    if not body or body[0].opcode != op.RESUME:
        first_line = body[0].line if body else builder.current_line
        body.insert(0, _PendingInstruction(op.RESUME, str(op.RESUME_START), first_line, builder.source_line))
    idx = 0
    while idx < len(body):
        ins = body[idx]
        if ins.opcode == op.YIELD_VALUE:
            nxt = body[idx + 1] if idx + 1 < len(body) else None
            if nxt is None or nxt.opcode != op.RESUME:
                body.insert(idx + 1, _PendingInstruction(op.RESUME, str(op.RESUME_AFTER_YIELD), ins.line, ins.source_line))
        idx += 1
    for label in builder.unbound:
        builder.labels[label] = None
    builder.unbound.clear()
    builder.offsets = {id(pending): offset for offset, pending in enumerate(body)}


def _resolve_operand(builder: _FunctionBuilder, pending: _PendingInstruction) -> int:
    opcode = pending.opcode
    operand = pending.operand
    line = pending.source_line
    if opcode in op.NO_ARG_OPS:
        if operand:
            raise AssemblyError(f"{op.OPCODE_NAMES[opcode]} takes no operand", line=line)
        return 0
    if not operand:
        raise AssemblyError(f"{op.OPCODE_NAMES[opcode]} requires an operand", line=line)
    if opcode in op.CONST_OPS:
        return builder.const_index(parse_literal(operand, line=line))
    if opcode in op.LOCAL_OPS:
        varnames = builder.varnames
        if operand in varnames:
            return varnames.index(operand)
        if SYMBOL_RE.match(operand):
            raise AssemblyError(f"unknown local '{operand}' in {builder.name}", line=line)
        return parse_int(operand, line=line)
    if opcode in op.NAME_OPS:
        if not SYMBOL_RE.match(operand):
            raise AssemblyError(f"bad global name '{operand}'", line=line)
        return builder.name_index(operand)
    if opcode in op.TARGET_OPS:
        if operand in builder.labels:
            return builder.label_offset(operand)
        if SYMBOL_RE.match(operand):
            raise AssemblyError(f"undefined label '{operand}'", line=line)
        return parse_int(operand, line=line)
    if opcode == op.BINARY_OP:
        if operand in op.BINARY_OPERATORS:
            return op.BINARY_OPERATORS.index(operand)
        raise AssemblyError(f"unknown binary operator '{operand}'", line=line)
    if opcode == op.COMPARE_OP:
        text = " ".join(operand.split())
        if text in op.COMPARE_OPERATORS:
            return op.COMPARE_OPERATORS.index(text)
        raise AssemblyError(f"unknown comparison '{operand}'", line=line)
    value = parse_int(operand, line=line)
    if value < 0:
        raise AssemblyError(f"operand must be non-negative, got {value}", line=line)
    return value


def _finish(builder: _FunctionBuilder, filename: str) -> CodeUnit:
    _normalise_body(builder)
    size = len(builder.body)
    instructions: List[Instruction] = []
    for pending in builder.body:
        arg = _resolve_operand(builder, pending)
        if pending.opcode in op.TARGET_OPS and not 0 <= arg < size:
            raise AssemblyError(f"jump target {arg} outside {builder.name}", line=pending.source_line)
        instructions.append(Instruction(pending.opcode, arg, pending.line))
    table: List[ExceptionEntry] = []
    for start, end, target, depth, line in builder.handlers:
        try:
            entry = ExceptionEntry(
                builder.label_offset(start),
                builder.label_offset(end) if end != "$" else size,
                builder.label_offset(target),
                depth,
            )
        except KeyError as exc:
            raise AssemblyError(f"undefined label {exc.args[0]!r} in .handler", line=line) from None
        table.append(entry)
    return CodeUnit(
        builder.name,
        instructions,
        consts=builder.consts,
        names=builder.names,
        varnames=builder.varnames,
        argcount=len(builder.params),
        exception_table=table,
        is_generator=builder.is_generator,
        filename=filename,
    )


def assemble(source: str, *, name: str = "<module>", filename: Optional[str] = None) -> Module:
    """Assemble ``source`` into a :class:`Module`."""
    filename = filename or name
    module = Module(name)
    builder: Optional[_FunctionBuilder] = None

    for lineno, raw in enumerate(source.splitlines(), start=1):
        text = _strip_comment(raw).strip()
        if not text:
            continue
        if text.startswith("."):
            directive, _, rest = text.partition(" ")
            rest = rest.strip()
            directive = directive.lower()
            if directive == ".func":
                if builder is not None:
                    raise AssemblyError("nested .func (missing .end)", line=lineno)
                parts = rest.replace(",", " ").split()
                if not parts or not SYMBOL_RE.match(parts[0]):
                    raise AssemblyError(".func requires a name", line=lineno)
                if parts[0] in module.units:
                    raise AssemblyError(f"duplicate function '{parts[0]}'", line=lineno)
                builder = _FunctionBuilder(parts[0], parts[1:], lineno)
                continue
            if directive == ".global":
                gname, sep, value = rest.partition("=")
                gname = gname.strip()
                if not SYMBOL_RE.match(gname):
                    raise AssemblyError(f"bad global name '{gname}'", line=lineno)
                module.globals[gname] = parse_literal(value, line=lineno) if sep else None
                continue
            if directive == ".module":
                module.name = rest or module.name
                continue
            if builder is None:
                raise AssemblyError(f"{directive} outside .func", line=lineno)
            if directive == ".end":
                unit = _finish(builder, filename)
                module.units[unit.name] = unit
                module.globals[unit.name] = Function(unit, module.globals)
                builder = None
            elif directive == ".locals":
                builder.locals.extend(rest.replace(",", " ").split())
            elif directive == ".generator":
                builder.is_generator = True
            elif directive == ".line":
                builder.current_line = parse_int(rest, line=lineno) if rest else None
            elif directive == ".handler":
                parts = rest.split()
                if len(parts) not in (3, 4):
                    raise AssemblyError(".handler expects: start end target [depth]", line=lineno)
                depth = parse_int(parts[3], line=lineno) if len(parts) == 4 else 0
                builder.handlers.append((parts[0], parts[1], parts[2], depth, lineno))
            else:
                raise AssemblyError(f"unknown directive {directive}", line=lineno)
            continue

        if builder is None:
            raise AssemblyError("instruction outside .func", line=lineno)
        label_match = LABEL_RE.match(text)
        while label_match:
            label = label_match.group(1)
            if label in builder.labels or label in builder.unbound:
                raise AssemblyError(f"duplicate label '{label}'", line=lineno)
            builder.unbound.append(label)
            text = text[label_match.end():].strip()
            label_match = LABEL_RE.match(text)
        if not text:
            continue
        mnemonic, _, operand = text.partition(" ")
        opcode = op.OPCODES.get(mnemonic.upper())
        if opcode is None or opcode == op.TRAP:
            raise AssemblyError(f"unknown mnemonic '{mnemonic}'", line=lineno)
        builder.append(_PendingInstruction(opcode, operand.strip(), builder.current_line, lineno))

    if builder is not None:
        raise AssemblyError(f"function '{builder.name}' missing .end", line=builder.source_line)
    return module


def assemble_file(path: Path | str) -> Module:
    path = Path(path)
    return assemble(path.read_text(encoding="utf-8"), name=path.stem, filename=str(path))
