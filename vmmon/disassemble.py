#!/usr/bin/env python3
import argparse
import json
import sys
from pathlib import Path
from typing import Dict, List, Optional

from . import opcodes as op
from .asm import assemble_file
from .code import CodeUnit, Executable
from .events import format_event_set, parse_event_names
from .rewriter import Rewriter, trap_layout


def format_operand(unit: CodeUnit, opcode: int, arg: int) -> str:
    if opcode in op.NO_ARG_OPS:
        return ''
    if opcode in op.CONST_OPS:
        return repr(unit.consts[arg]) if arg < len(unit.consts) else f"#{arg}"
    if opcode in op.LOCAL_OPS:
        return unit.varnames[arg] if arg < len(unit.varnames) else f"#{arg}"
    if opcode in op.NAME_OPS:
        return unit.names[arg] if arg < len(unit.names) else f"#{arg}"
    if opcode == op.BINARY_OP:
        return op.BINARY_OPERATORS[arg]
    if opcode == op.COMPARE_OP:
        return op.COMPARE_OPERATORS[arg]
    return str(arg)


def disassemble(unit: CodeUnit, executable: Optional[Executable] = None) -> List[Dict[str, object]]:
    """Describe every offset of ``executable`` (default: the unit's current form)."""
    executable = executable if executable is not None else unit.executable
    listing = []
    handlers = {entry.target for entry in unit.exception_table}
    for offset, ins in enumerate(unit.instructions):
        inst: Dict[str, object] = {
            'offset': offset,
            'line': ins.line,
            'mnemonic': ins.name,
            'arg': ins.arg,
            'operands': format_operand(unit, ins.opcode, ins.arg),
        }
        if ins.opcode in op.TARGET_OPS:
            inst['target'] = ins.arg
        if offset in handlers:
            inst['handler'] = True
        trap = executable.trap_at(offset) if executable is not None else None
        if trap is not None:
            inst['trap'] = {
                'index': executable.ops[offset][1],
                'events': format_event_set(trap.events),
                'marker': trap.marker,
            }
        listing.append(inst)
    return listing


def format_listing(unit: CodeUnit, executable: Optional[Executable] = None) -> List[str]:
    executable = executable if executable is not None else unit.executable
    version = f" v{executable.version}" if executable is not None else ''
    lines = [f"; {unit.name}({', '.join(unit.varnames[:unit.argcount])}){version} {unit.filename}"]
    for entry in unit.exception_table:
        lines.append(f";   handler [{entry.start}, {entry.end}) -> {entry.target} depth={entry.depth}")
    line_starts = unit.line_start_set
    for inst in disassemble(unit, executable):
        offset = inst['offset']
        line = f"{inst['line']:>4}" if offset in line_starts and inst['line'] is not None else '    '
        marker = '>>' if inst.get('handler') else '  '
        operands = f" {inst['operands']}" if inst['operands'] else ''
        target = f" -> {inst['target']}" if 'target' in inst else ''
        text = f"{line} {marker} {offset:>4} {inst['mnemonic']}{operands}{target}"
        trap = inst.get('trap')
        if trap:
            notes = [] if trap['events'] == 'NONE' else [trap['events']]
            if trap['marker'] is not None:
                notes.append(f"MARKER {trap['marker']}")
            text = f"{text:<48} ; TRAP {trap['index']}: {' '.join(notes)}"
        lines.append(text)
    return lines


def main(argv: Optional[List[str]] = None) -> int:
    ap = argparse.ArgumentParser(description='vmmon disassembler')
    ap.add_argument('source', type=Path, help='.vasm file to disassemble')
    ap.add_argument('--function', '-f', action='append', help='only list these functions')
    ap.add_argument('--events', help='comma separated event kinds; show the instrumented form they produce')
    ap.add_argument('-o', '--output', type=Path, help='write JSON output instead of text')
    args = ap.parse_args(argv)

    module = assemble_file(args.source)
    events = parse_event_names((args.events or '').split(','))
    rewriter = Rewriter()
    units = [module.unit(name) for name in args.function] if args.function else list(module.units.values())
    forms = {unit.name: rewriter.build(unit, trap_layout(unit, events, {}), events) for unit in units}

    if args.output:
        payload = {
            'module': module.name,
            'events': format_event_set(events),
            'units': {unit.name: disassemble(unit, forms[unit.name]) for unit in units},
        }
        args.output.write_text(json.dumps(payload, indent=2))
        return 0
    for idx, unit in enumerate(units):
        if idx:
            print()
        for line in format_listing(unit, forms[unit.name]):
            print(line)
    return 0


if __name__ == '__main__':
    sys.exit(main())
