#!/usr/bin/env python3
"""Shared opcode definitions for the vmmon interpreter.

Keeping the canonical mapping in a single module prevents drift between the
assembler, disassembler, interpreter and rewriter. Tests assert that all
consumers import these tables unchanged.
"""

from __future__ import annotations

from typing import Dict, FrozenSet, Iterable, Tuple

# Ordered list so docs and tooling can iterate in a stable order.
OPCODE_LIST: Tuple[Tuple[str, int], ...] = (
    ("NOP", 0x00),
    ("RESUME", 0x01),
    ("LOAD_CONST", 0x02),
    ("LOAD_FAST", 0x03),
    ("STORE_FAST", 0x04),
    ("LOAD_GLOBAL", 0x05),
    ("STORE_GLOBAL", 0x06),
    ("POP_TOP", 0x07),
    ("DUP_TOP", 0x08),
    ("BINARY_OP", 0x10),
    ("COMPARE_OP", 0x11),
    ("UNARY_NOT", 0x12),
    ("BUILD_LIST", 0x13),
    ("JUMP", 0x20),
    ("POP_JUMP_IF_FALSE", 0x21),
    ("POP_JUMP_IF_TRUE", 0x22),
    ("CALL", 0x24),
    ("RETURN_VALUE", 0x25),
    ("YIELD_VALUE", 0x26),
    ("RAISE", 0x27),
    ("TRAP", 0x7F),
)

OPCODES: Dict[str, int] = {mnemonic: opcode for mnemonic, opcode in OPCODE_LIST}
OPCODE_NAMES: Dict[int, str] = {opcode: mnemonic for mnemonic, opcode in OPCODE_LIST}

NOP = OPCODES["NOP"]
RESUME = OPCODES["RESUME"]
LOAD_CONST = OPCODES["LOAD_CONST"]
LOAD_FAST = OPCODES["LOAD_FAST"]
STORE_FAST = OPCODES["STORE_FAST"]
LOAD_GLOBAL = OPCODES["LOAD_GLOBAL"]
STORE_GLOBAL = OPCODES["STORE_GLOBAL"]
POP_TOP = OPCODES["POP_TOP"]
DUP_TOP = OPCODES["DUP_TOP"]
BINARY_OP = OPCODES["BINARY_OP"]
COMPARE_OP = OPCODES["COMPARE_OP"]
UNARY_NOT = OPCODES["UNARY_NOT"]
BUILD_LIST = OPCODES["BUILD_LIST"]
JUMP = OPCODES["JUMP"]
POP_JUMP_IF_FALSE = OPCODES["POP_JUMP_IF_FALSE"]
POP_JUMP_IF_TRUE = OPCODES["POP_JUMP_IF_TRUE"]
CALL = OPCODES["CALL"]
RETURN_VALUE = OPCODES["RETURN_VALUE"]
YIELD_VALUE = OPCODES["YIELD_VALUE"]
RAISE = OPCODES["RAISE"]
TRAP = OPCODES["TRAP"]

# Operand kinds, used by the assembler to resolve symbolic arguments.
CONST_OPS: FrozenSet[int] = frozenset({LOAD_CONST})
LOCAL_OPS: FrozenSet[int] = frozenset({LOAD_FAST, STORE_FAST})
NAME_OPS: FrozenSet[int] = frozenset({LOAD_GLOBAL, STORE_GLOBAL})
JUMP_OPS: FrozenSet[int] = frozenset({JUMP})
BRANCH_OPS: FrozenSet[int] = frozenset({POP_JUMP_IF_FALSE, POP_JUMP_IF_TRUE})
TARGET_OPS: FrozenSet[int] = JUMP_OPS | BRANCH_OPS
NO_ARG_OPS: FrozenSet[int] = frozenset(
    {NOP, POP_TOP, DUP_TOP, UNARY_NOT, RETURN_VALUE, YIELD_VALUE, RAISE}
)

# BINARY_OP / COMPARE_OP operand tables. The index is the encoded argument.
BINARY_OPERATORS: Tuple[str, ...] = ("+", "-", "*", "//", "%", "/", "&", "|", "^", "<<", ">>")
COMPARE_OPERATORS: Tuple[str, ...] = ("<", "<=", "==", "!=", ">", ">=", "is", "is not", "in", "not in")

RESUME_START = 0
RESUME_AFTER_YIELD = 1

__all__ = [
    "OPCODE_LIST",
    "OPCODES",
    "OPCODE_NAMES",
    "BINARY_OPERATORS",
    "COMPARE_OPERATORS",
]


def opcode_values() -> Iterable[int]:
    """Return all VM opcode numeric values."""

    return OPCODE_NAMES.keys()
