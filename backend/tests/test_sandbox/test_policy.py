"""Tests for the static script policy."""

import pytest

from blockflow.errors import ScriptSyntaxError
from blockflow.sandbox.policy import SCRIPT_FILENAME, compile_restricted


class TestRejected:
    """Scripts the policy refuses to compile."""

    @pytest.mark.parametrize(
        "source",
        [
            "eval('1')",
            "exec('x = 1')",
            "open('/etc/passwd')",
            "type(1)",
            "getattr(1, 'real')",
            "globals()",
        ],
    )
    def test_reflective_builtins(self, source):
        with pytest.raises(ScriptSyntaxError, match="not available"):
            compile_restricted(source)

    @pytest.mark.parametrize(
        "source",
        [
            "_hidden = 1",
            "x = __builtins__",
            "def _helper():\n    pass",
            "def f(_arg):\n    pass",
        ],
    )
    def test_underscore_names(self, source):
        with pytest.raises(ScriptSyntaxError, match="starting with '_'"):
            compile_restricted(source)

    @pytest.mark.parametrize(
        "source",
        ["x = ().__class__", "x = 'a'.__doc__", "x = [].__len__()"],
    )
    def test_private_attributes(self, source):
        with pytest.raises(ScriptSyntaxError, match="is not allowed"):
            compile_restricted(source)

    def test_attribute_assignment(self):
        with pytest.raises(ScriptSyntaxError, match="assigning or deleting attributes"):
            compile_restricted("x = 1\nx.real = 2")

    @pytest.mark.parametrize(
        "source,label",
        [
            ("class A:\n    pass", "class definitions"),
            ("with x:\n    pass", "with statements"),
            ("def f():\n    yield 1", "generator functions"),
            ("x = 1\ndef f():\n    global x", "global statements"),
            ("async def f():\n    pass", "async functions"),
            ("match 1:\n    case _:\n        pass", "match statements"),
        ],
    )
    def test_forbidden_statements(self, source, label):
        with pytest.raises(ScriptSyntaxError, match=label):
            compile_restricted(source)

    def test_finally(self):
        with pytest.raises(ScriptSyntaxError, match="finally"):
            compile_restricted("try:\n    x = 1\nfinally:\n    x = 2")

    def test_bare_except(self):
        with pytest.raises(ScriptSyntaxError, match="bare except"):
            compile_restricted("try:\n    x = 1\nexcept:\n    x = 2")

    def test_computed_exception_type(self):
        with pytest.raises(ScriptSyntaxError, match="plain names"):
            compile_restricted("try:\n    x = 1\nexcept errors[0]:\n    pass")

    @pytest.mark.parametrize(
        "source",
        ["from . import x", "from math import *"],
    )
    def test_import_forms(self, source):
        with pytest.raises(ScriptSyntaxError):
            compile_restricted(source)

    def test_chained_item_assignment(self):
        with pytest.raises(ScriptSyntaxError, match="item assignment"):
            compile_restricted("a = [0]\nb = [0]\na[0] = b[0] = 1")

    def test_augmented_assignment_on_attribute(self):
        with pytest.raises(ScriptSyntaxError, match="augmented assignment"):
            compile_restricted("x = 1\nx.real += 1")

    def test_syntax_error_reports_line(self):
        with pytest.raises(ScriptSyntaxError) as exc_info:
            compile_restricted("x = 1\ny = (")
        assert exc_info.value.lineno is not None
        assert exc_info.value.message.startswith("Script compilation error:")

    def test_first_violation_reported(self):
        source = "x = 1\ny = eval\nz = _private"
        with pytest.raises(ScriptSyntaxError) as exc_info:
            compile_restricted(source)
        assert exc_info.value.lineno == 2
        assert "(line 2)" in exc_info.value.message


class TestAccepted:
    """Scripts the policy accepts."""

    def test_code_uses_script_filename(self):
        code = compile_restricted("x = 1")
        assert code.co_filename == SCRIPT_FILENAME

    @pytest.mark.parametrize(
        "source",
        [
            "import math\nx = math.sqrt(4)",
            "from datetime import timedelta",
            "d = {}\nd['k'] = 1\nd['k'] += 1",
            "xs = [1, 2, 3]\nys = xs[1:]\nxs[0:1] = [9]",
            "a, b = 1, 2",
            "total = sum(n * n for n in range(10))",
            "f = lambda v: v + 1",
            "try:\n    x = 1 / 0\nexcept (ZeroDivisionError, ValueError) as e:\n    x = str(e)",
            "name = 'x'\nmsg = f'{name!r:>10}'",
            "xs = [*[1], *[2]]\nd = {**{'a': 1}}",
            "def on_change(entity_id, new_state):\n    set_state('light.a', new_state)",
        ],
    )
    def test_allowed(self, source):
        compile_restricted(source)
