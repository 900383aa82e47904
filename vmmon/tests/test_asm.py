import textwrap

import pytest

from vmmon import opcodes as op
from vmmon.asm import assemble, assemble_file
from vmmon.code import ExceptionEntry, Function
from vmmon.errors import AssemblyError

from .conftest import CLASSIFY_SRC, GEN_SRC, SAFE_DIV_SRC


def assemble_source(src: str):
    return assemble(textwrap.dedent(src).strip("\n"), name="t")


def test_resume_is_inserted_and_labels_follow():
    module = assemble(CLASSIFY_SRC)
    unit = module.unit("classify")
    names = [ins.name for ins in unit.instructions]
    assert names == [
        "RESUME",
        "LOAD_FAST",
        "LOAD_CONST",
        "COMPARE_OP",
        "POP_JUMP_IF_FALSE",
        "LOAD_CONST",
        "JUMP",
        "LOAD_CONST",
        "RETURN_VALUE",
    ]
    assert unit.instructions[0].arg == op.RESUME_START
    assert unit.instructions[4].arg == 7
    assert unit.instructions[6].arg == 8
    assert unit.line_starts() == (0, 5, 7, 8)
    assert unit.first_line == 1


def test_resume_after_yield_shifts_later_labels():
    unit = assemble(GEN_SRC).unit("gen")
    assert unit.is_generator
    assert unit.instructions[8].opcode == op.YIELD_VALUE
    assert unit.instructions[9].opcode == op.RESUME
    assert unit.instructions[9].arg == op.RESUME_AFTER_YIELD
    # loop head and exit land on the right instructions after the insert
    assert unit.instructions[15].opcode == op.JUMP
    assert unit.instructions[15].arg == 3
    assert unit.instructions[6].arg == 16


def test_handler_directive_and_end_of_body_labels():
    unit = assemble(SAFE_DIV_SRC).unit("safe_div")
    assert unit.exception_table == (ExceptionEntry(1, 5, 5, 0),)
    assert unit.handler_for(3) == ExceptionEntry(1, 5, 5, 0)
    assert unit.handler_for(5) is None

    module = assemble_source(
        """
        .func f
        start:
            LOAD_CONST 1
            RETURN_VALUE
        .handler start $ start 0
        .end
        """
    )
    assert module.unit("f").exception_table[0].end == 3


def test_narrowest_handler_wins():
    module = assemble_source(
        """
        .func f
        outer:
            NOP
        inner:
            NOP
            NOP
        inner_end:
            LOAD_CONST None
            RETURN_VALUE
        on_error:
            RETURN_VALUE
        .handler outer on_error on_error
        .handler inner inner_end inner_end 0
        .end
        """
    )
    unit = module.unit("f")
    assert unit.handler_for(2).target == 4
    assert unit.handler_for(1).target == 6


def test_constants_are_deduplicated_by_type():
    module = assemble_source(
        """
        .func f
            LOAD_CONST 1
            LOAD_CONST True
            LOAD_CONST 1
            LOAD_CONST 'a;b'  ; comment after a quoted semicolon
            BUILD_LIST 4
            RETURN_VALUE
        .end
        """
    )
    unit = module.unit("f")
    assert unit.consts == (1, True, "a;b")
    assert [ins.arg for ins in unit.instructions[1:5]] == [0, 1, 0, 2]


def test_globals_and_functions_share_module_namespace():
    module = assemble_source(
        """
        .global limit = 5
        .global empty
        .func f x
        .locals y
            LOAD_GLOBAL limit
            STORE_FAST y
            LOAD_FAST 1
            RETURN_VALUE
        .end
        """
    )
    assert module.globals["limit"] == 5
    assert module.globals["empty"] is None
    func = module.function("f")
    assert isinstance(func, Function)
    assert func.globals is module.globals
    unit = module.unit("f")
    assert unit.varnames == ("x", "y")
    assert unit.argcount == 1
    assert unit.names == ("limit",)


@pytest.mark.parametrize(
    "src, message",
    [
        (".func f\n    BOGUS\n.end", "unknown mnemonic"),
        (".func f\n    TRAP 0\n.end", "unknown mnemonic"),
        (".func f\n    JUMP nowhere\n.end", "undefined label"),
        (".func f\n    LOAD_FAST q\n.end", "unknown local"),
        (".func f\n    POP_TOP 1\n.end", "takes no operand"),
        (".func f\n    LOAD_CONST\n.end", "requires an operand"),
        (".func f\n    BINARY_OP **\n.end", "unknown binary operator"),
        (".func f\n    LOAD_CONST 1\n", "missing .end"),
        ("    NOP", "outside .func"),
        (".func f\nx:\nx:\n    NOP\n.end", "duplicate label"),
        (".func f\n    JUMP 9\n.end", "outside f"),
        (".func f\n.handler a b\n.end", ".handler expects"),
        (".func f\n.func g\n", "nested .func"),
    ],
)
def test_assembly_errors(src, message):
    with pytest.raises(AssemblyError, match=message):
        assemble(src)


def test_error_carries_line_number():
    with pytest.raises(AssemblyError) as excinfo:
        assemble(".func f\n    NOP\n    BOGUS\n.end")
    assert excinfo.value.line == 3
    assert "line 3" in str(excinfo.value)


def test_assemble_file_uses_stem_as_module_name(tmp_path):
    path = tmp_path / "demo.vasm"
    path.write_text(CLASSIFY_SRC)
    module = assemble_file(path)
    assert module.name == "demo"
    assert module.unit("classify").filename == str(path)
