"""Shared programs and fixtures for the vmmon tests."""

from __future__ import annotations

import gc

import pytest

from vmmon import audit
from vmmon.asm import assemble
from vmmon.monitor import get_monitor
from vmmon.vm import Interpreter

FACT_SRC = """
.func fact n
.line 1
    LOAD_FAST n
    LOAD_CONST 1
    COMPARE_OP <=
    POP_JUMP_IF_FALSE recurse
.line 2
    LOAD_CONST 1
    RETURN_VALUE
.line 3
recurse:
    LOAD_GLOBAL fact
    LOAD_FAST n
    LOAD_CONST 1
    BINARY_OP -
    CALL 1
    LOAD_FAST n
    BINARY_OP *
    RETURN_VALUE
.end
"""

# offsets: 4 = POP_JUMP_IF_FALSE, 6 = JUMP, 7 = "pos" branch, 8 = RETURN_VALUE
CLASSIFY_SRC = """
.func classify n
.line 1
    LOAD_FAST n
    LOAD_CONST 0
    COMPARE_OP <
    POP_JUMP_IF_FALSE positive
.line 2
    LOAD_CONST "neg"
    JUMP done
.line 3
positive:
    LOAD_CONST "pos"
done:
.line 4
    RETURN_VALUE
.end
"""

# offsets: 5 = loop head, 8 = loop test, 17 = backward JUMP, 18 = exit
COUNT_SRC = """
.func count n
.locals i total
.line 1
    LOAD_CONST 0
    STORE_FAST i
    LOAD_CONST 0
    STORE_FAST total
.line 2
loop:
    LOAD_FAST i
    LOAD_FAST n
    COMPARE_OP <
    POP_JUMP_IF_FALSE done
.line 3
    LOAD_FAST total
    LOAD_FAST i
    BINARY_OP +
    STORE_FAST total
.line 4
    LOAD_FAST i
    LOAD_CONST 1
    BINARY_OP +
    STORE_FAST i
    JUMP loop
.line 5
done:
    LOAD_FAST total
    RETURN_VALUE
.end
"""

# offsets: 8 = YIELD_VALUE, 9 = implicit RESUME 1, 17 = RETURN_VALUE
GEN_SRC = """
.func gen n
.generator
.locals i
.line 1
    LOAD_CONST 0
    STORE_FAST i
.line 2
loop:
    LOAD_FAST i
    LOAD_FAST n
    COMPARE_OP <
    POP_JUMP_IF_FALSE done
.line 3
    LOAD_FAST i
    YIELD_VALUE
    POP_TOP
.line 4
    LOAD_FAST i
    LOAD_CONST 1
    BINARY_OP +
    STORE_FAST i
    JUMP loop
.line 5
done:
    LOAD_CONST None
    RETURN_VALUE
.end
"""

# offsets: 3 = BINARY_OP /, 5 = handler
SAFE_DIV_SRC = """
.func safe_div a b
.line 1
try_start:
    LOAD_FAST a
    LOAD_FAST b
    BINARY_OP /
    RETURN_VALUE
try_end:
.line 2
handler:
    POP_TOP
    LOAD_CONST -1
    RETURN_VALUE
.handler try_start try_end handler
.end
"""

# offsets: 3 = CALL
USE_LEN_SRC = """
.func use_len items
.line 1
    LOAD_GLOBAL len
    LOAD_FAST items
    CALL 1
    RETURN_VALUE
.end
"""

BODY_SRC = """
.func body x
.line 1
    LOAD_FAST x
    LOAD_CONST 1
    BINARY_OP +
    STORE_FAST x
.line 2
    LOAD_FAST x
    LOAD_CONST 2
    BINARY_OP *
    STORE_FAST x
.line 3
    LOAD_FAST x
    RETURN_VALUE
.end
"""

ALL_SOURCES = (FACT_SRC, CLASSIFY_SRC, COUNT_SRC, GEN_SRC, SAFE_DIV_SRC, USE_LEN_SRC, BODY_SRC)


@pytest.fixture(autouse=True)
def reset_monitor():
    monitor = get_monitor()
    monitor.reset()
    audit.clear_audit_hooks()
    yield monitor
    monitor.reset()
    audit.clear_audit_hooks()
    gc.collect()


@pytest.fixture
def monitor(reset_monitor):
    return reset_monitor


@pytest.fixture
def interp(monitor):
    return Interpreter(monitor=monitor)


@pytest.fixture
def programs():
    """A fresh module holding every test program."""
    return assemble("\n".join(ALL_SOURCES), name="programs")
