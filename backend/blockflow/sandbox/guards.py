"""Run-time guards called by rewritten scripts.

The policy rewrites attribute reads, calls, item writes, binary operations,
comprehensions and f-strings into calls to the functions built here. Guards
check sizes before an operation whose result could be huge and after any
operation that builds a string or collection.
"""

import importlib
import operator
import random
import re
import types
from typing import Any

from blockflow.errors import CapabilityDenied, ResourceLimitExceeded
from blockflow.sandbox import policy
from blockflow.sandbox.budget import ExecutionBudget

ALLOWED_MODULES = frozenset({"math", "random", "datetime", "json", "statistics"})

# Integers may hold roughly as many digits as a string may hold characters
INT_BITS_PER_CHAR = 4

STRING_TYPES = (str, bytes, bytearray)
COLLECTION_TYPES = (list, tuple, dict, set, frozenset)
MUTABLE_TYPES = (list, dict, set, bytearray)

DENIED_ATTRIBUTES = frozenset(
    {
        "format",
        "format_map",
        "maketrans",
        "mro",
        "translate",
        "gi_code",
        "gi_frame",
        "gi_yieldfrom",
        "cr_code",
        "cr_frame",
        "ag_code",
        "ag_frame",
        "f_back",
        "f_builtins",
        "f_code",
        "f_globals",
        "f_locals",
        "tb_frame",
        "tb_next",
    }
)

DENIED_OBJECT_TYPES = (
    types.FrameType,
    types.CodeType,
    types.TracebackType,
    types.GeneratorType,
    types.CoroutineType,
    types.AsyncGeneratorType,
)

WIDTH_METHODS = frozenset({"ljust", "rjust", "center", "zfill"})

# Module members that may have been re-exported from another module
MEMBER_TYPES = (type, types.FunctionType, types.BuiltinFunctionType, types.MethodType)

# math functions whose running time grows with their first argument
BOUNDED_MATH = frozenset({"factorial", "comb", "perm"})

BINARY_OPERATORS = {
    "Add": operator.add,
    "Sub": operator.sub,
    "Mult": operator.mul,
    "MatMult": operator.matmul,
    "Div": operator.truediv,
    "FloorDiv": operator.floordiv,
    "Mod": operator.mod,
    "Pow": operator.pow,
    "LShift": operator.lshift,
    "RShift": operator.rshift,
    "BitOr": operator.or_,
    "BitXor": operator.xor,
    "BitAnd": operator.and_,
}

INPLACE_OPERATORS = {
    "Add": operator.iadd,
    "Sub": operator.isub,
    "Mult": operator.imul,
    "MatMult": operator.imatmul,
    "Div": operator.itruediv,
    "FloorDiv": operator.ifloordiv,
    "Mod": operator.imod,
    "Pow": operator.ipow,
    "LShift": operator.ilshift,
    "RShift": operator.irshift,
    "BitOr": operator.ior,
    "BitXor": operator.ixor,
    "BitAnd": operator.iand,
}

PERCENT_FIELD = re.compile(r"%(?:\([^)]*\))?[#0\- +]*(\*|\d+)?(?:\.(\*|\d+))?")
DIGITS = re.compile(r"\d+")


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


class ScriptGuards:
    """Guard functions bound to one run's budget and limits."""

    def __init__(
        self,
        budget: ExecutionBudget,
        max_modules: int,
        max_string_size: int,
        max_collection_size: int,
    ):
        self.budget = budget
        self.max_modules = max_modules
        self.max_string_size = max_string_size
        self.max_collection_size = max_collection_size
        self.max_int_bits = max_string_size * INT_BITS_PER_CHAR

    # ==================== Size checks ====================

    def check_size(self, value: Any) -> Any:
        """Trip the budget if a value is larger than the limits allow."""
        if isinstance(value, STRING_TYPES):
            if len(value) > self.max_string_size:
                self._too_large("string_size", f"String length {len(value)}", self.max_string_size)
        elif isinstance(value, COLLECTION_TYPES):
            if len(value) > self.max_collection_size:
                self._too_large(
                    "collection_size", f"Collection size {len(value)}", self.max_collection_size
                )
        elif _is_int(value) and value.bit_length() > self.max_int_bits:
            self._too_large("memory", f"Integer of {value.bit_length()} bits", self.max_int_bits)
        return value

    def check_length(self, limit: str, length: int) -> None:
        """Trip the budget before building a string or collection of ``length``."""
        maximum = self.max_string_size if limit == "string_size" else self.max_collection_size
        if length > maximum:
            self._too_large(limit, f"Result of length {length}", maximum)

    def _too_large(self, limit: str, what: str, maximum: int):
        self.budget.trip(ResourceLimitExceeded(limit, f"{what} exceeds the limit of {maximum}"))

    def deny(self, capability: str, message: str):
        self.budget.trip(CapabilityDenied(capability, message))

    # ==================== Attributes and calls ====================

    def getattr_(self, obj: Any, name: str) -> Any:
        if name.startswith("_") or name in DENIED_ATTRIBUTES:
            self.deny("attribute", f"Access to attribute '{name}' is not allowed")
        if isinstance(obj, DENIED_OBJECT_TYPES):
            self.deny("attribute", f"Access to {type(obj).__name__} objects is not allowed")

        value = getattr(obj, name)
        if isinstance(obj, types.ModuleType):
            self._check_module_member(obj, name, value)
        elif isinstance(value, types.ModuleType) and value.__name__ not in ALLOWED_MODULES:
            self.deny("import", f"Access to module '{value.__name__}' is not allowed")
        return value

    def _check_module_member(self, module: types.ModuleType, name: str, value: Any) -> None:
        """Deny modules and names an allowed module imported from elsewhere."""
        if isinstance(value, types.ModuleType):
            if value.__name__ not in ALLOWED_MODULES:
                self.deny("import", f"Access to module '{value.__name__}' is not allowed")
            return
        if not isinstance(value, MEMBER_TYPES):
            return
        origin = getattr(value, "__module__", None)
        if isinstance(origin, str) and origin.split(".")[0].lstrip("_") not in ALLOWED_MODULES:
            self.deny(
                "attribute",
                f"'{module.__name__}.{name}' comes from module '{origin}', which is not allowed",
            )

    def call(self, fn: Any, /, *args: Any, **kwargs: Any) -> Any:
        self._precheck_call(fn, args, kwargs)
        result = fn(*args, **kwargs)

        owner = getattr(fn, "__self__", None)
        if isinstance(owner, MUTABLE_TYPES):
            self.check_size(owner)
        return self.check_size(result)

    def _precheck_call(self, fn: Any, args: tuple, kwargs: dict) -> None:
        if fn is bytes or fn is bytearray:
            if args and _is_int(args[0]):
                self.check_length("string_size", args[0])
            return

        owner = getattr(fn, "__self__", None)
        name = getattr(fn, "__name__", None)

        if isinstance(owner, random.Random):
            self._precheck_random(name, args, kwargs)
            return

        if isinstance(owner, types.ModuleType):
            if owner.__name__ == "math" and name in BOUNDED_MATH and args and _is_int(args[0]):
                self.check_length("string_size", args[0])
            return

        if not isinstance(owner, STRING_TYPES):
            return

        if name in WIDTH_METHODS and args and _is_int(args[0]):
            self.check_length("string_size", args[0])
        elif name == "expandtabs":
            tabsize = args[0] if args and _is_int(args[0]) else 8
            tab = "\t" if isinstance(owner, str) else b"\t"
            self.check_length("string_size", len(owner) + owner.count(tab) * tabsize)
        elif name == "replace" and len(args) >= 2:
            old, new = args[0], args[1]
            count = len(owner) + 1 if not old else owner.count(old)
            if len(args) >= 3 and _is_int(args[2]) and args[2] >= 0:
                count = min(count, args[2])
            self.check_length("string_size", len(owner) + count * max(len(new) - len(old), 0))

    def _precheck_random(self, name: str | None, args: tuple, kwargs: dict) -> None:
        # The module-level random functions are methods of a hidden Random instance
        if name == "choices":
            k = kwargs.get("k", 1)
            if _is_int(k):
                self.check_length("collection_size", k)
        elif name == "randbytes" and args and _is_int(args[0]):
            self.check_length("string_size", args[0])
        elif name == "getrandbits" and args and _is_int(args[0]):
            if args[0] > self.max_int_bits:
                self._too_large("memory", f"Integer of {args[0]} bits", self.max_int_bits)

    def setitem(self, obj: Any, key: Any, value: Any) -> None:
        obj[key] = value
        self.check_size(obj)

    # ==================== Operators ====================

    def binop(self, op: str, left: Any, right: Any) -> Any:
        self._precheck_operator(op, left, right)
        return self.check_size(BINARY_OPERATORS[op](left, right))

    def inplace(self, op: str, left: Any, right: Any) -> Any:
        self._precheck_operator(op, left, right)
        return self.check_size(INPLACE_OPERATORS[op](left, right))

    def _precheck_operator(self, op: str, left: Any, right: Any) -> None:
        if op == "Mult":
            for seq, count in ((left, right), (right, left)):
                if isinstance(seq, STRING_TYPES + (list, tuple)) and _is_int(count):
                    limit = "string_size" if isinstance(seq, STRING_TYPES) else "collection_size"
                    self.check_length(limit, len(seq) * max(count, 0))
        elif op == "Pow" and _is_int(left) and _is_int(right):
            if right > 0 and abs(left) > 1 and left.bit_length() * right > self.max_int_bits:
                self._too_large("memory", f"Power result of about {left.bit_length() * right} bits", self.max_int_bits)
        elif op == "LShift" and _is_int(left) and _is_int(right):
            if left and right > 0 and left.bit_length() + right > self.max_int_bits:
                self._too_large("memory", f"Shift result of about {left.bit_length() + right} bits", self.max_int_bits)
        elif op == "Mod" and isinstance(left, STRING_TYPES):
            self._precheck_percent_format(left)

    def _precheck_percent_format(self, template: str | bytes | bytearray) -> None:
        text = template.decode("latin-1") if isinstance(template, (bytes, bytearray)) else template
        for width, precision in PERCENT_FIELD.findall(text):
            if "*" in (width, precision):
                self.deny("format", "'*' widths in % formatting are not allowed")
            for number in (width, precision):
                if number:
                    self.check_length("string_size", int(number))

    # ==================== Formatting ====================

    def format_(self, value: Any, conversion: int = -1, spec: str | None = None) -> str:
        if conversion == ord("r"):
            value = repr(value)
        elif conversion == ord("s"):
            value = str(value)
        elif conversion == ord("a"):
            value = ascii(value)

        spec = spec or ""
        for number in DIGITS.findall(spec):
            self.check_length("string_size", int(number))
        return self.check_size(format(value, spec))

    def pow_(self, base: Any, exp: Any, mod: Any = None) -> Any:
        if mod is None:
            return self.binop("Pow", base, exp)
        return pow(base, exp, mod)

    def range_(self, *args: int) -> range:
        result = range(*args)
        if len(result) > self.budget.max_operations:
            self._too_large("operations", f"range of {len(result)} items", self.budget.max_operations)
        return result

    def iter_(self, obj: Any) -> Any:
        # The two-argument (callable, sentinel) form can loop forever in C
        return iter(obj)

    def sum_(self, iterable: Any, start: Any = 0) -> Any:
        if not isinstance(start, (int, float, complex)):
            raise TypeError("sum() can only add numbers; use ''.join() or a loop")
        return self.check_size(sum(iterable, start))

    # ==================== Imports ====================

    def import_(self, name: str, globals=None, locals=None, fromlist=(), level=0):
        if level != 0 or name not in ALLOWED_MODULES:
            self.deny("import", f"Import of module '{name}' is not allowed")

        self.budget.modules.add(name)
        if len(self.budget.modules) > self.max_modules:
            self.budget.trip(
                ResourceLimitExceeded(
                    "modules", f"Script imported more than {self.max_modules} modules"
                )
            )

        module = importlib.import_module(name)
        for attribute in fromlist or ():
            if hasattr(module, attribute):
                self._check_module_member(module, attribute, getattr(module, attribute))
        return module

    def bindings(self) -> dict[str, Any]:
        """Guard functions under the names the policy rewrites to."""
        return {
            policy.GETATTR: self.getattr_,
            policy.CALL: self.call,
            policy.SETITEM: self.setitem,
            policy.SLICE: slice,
            policy.BINOP: self.binop,
            policy.INPLACE: self.inplace,
            policy.CHECKED: self.check_size,
            policy.FORMAT: self.format_,
        }
