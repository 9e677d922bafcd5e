# tiny_runtime.py

import inspect
import operator
import os
import sys
import collections.abc
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, List, Optional, Literal, Dict

from tiny.tiny_transformer import TinyTransformer
from tiny.tiny_interpreter import Evaluator
from tiny.tiny_printer import Printer
from tiny.tiny_serialize import deserialize, serialize
from tiny.tiny_datatypes import (
    TinyError, TinyTypeError, DivisionByZero, StackOverflow, ProgramError,
    TinyDict, TinyList, TinyInstance, TinyFunction, BoundMethod, Program,
    type_name, is_truthy, values_equal,
)

DEFAULT_ENTRY = "Test.main"

# Python frames consumed by one TinyScript call (statement, expression and
# call dispatch layers), used to size the interpreter's recursion limit.
PY_FRAMES_PER_CALL = 40


# ===================================================================
# 1. Builtin Registration
# ===================================================================

def tiny_builtin(func):
    """Decorator to mark a StdLib method as a builtin bound into the global scope."""
    func._is_tiny_builtin = True
    return func


def _is_number(x) -> bool:
    return isinstance(x, (int, float)) and not isinstance(x, bool)


def _is_scalar(x) -> bool:
    return x is None or isinstance(x, (bool, int, float, str))


# ===================================================================
# 2. The Standard Library
# ===================================================================
class StdLib:
    """Python implementations of the TinyScript operators and builtins."""
    def __init__(self, evaluator):
        self.evaluator = evaluator
        self._printer = Printer()

    def bind(self, scope):
        """Defines every @tiny_builtin method in `scope` under its public name."""
        for name, member in inspect.getmembers(self):
            if callable(member) and getattr(member, '_is_tiny_builtin', False):
                scope.define(name.lstrip('_'), member)

    def _mismatch(self, op, *operands):
        kinds = " and ".join(type_name(o) for o in operands)
        return TinyTypeError(f"cannot apply '{op}' to {kinds}")

    def _numbers(self, op, a, b):
        if not (_is_number(a) and _is_number(b)):
            raise self._mismatch(op, a, b)

    def _arith(self, op, func, a, b):
        # Exact ints are unbounded; mixing one with a float can leave float range.
        try:
            return func(a, b)
        except OverflowError:
            raise TinyTypeError(f"result of '{op}' is out of range") from None

    # --- Math and Logic ---
    def _add(self, a, b):
        if _is_number(a) and _is_number(b):
            return self._arith('+', operator.add, a, b)
        if isinstance(a, str) and _is_scalar(b):
            return a + self._printer.to_display(b)
        if isinstance(b, str) and _is_scalar(a):
            return self._printer.to_display(a) + b
        if isinstance(a, TinyList) and isinstance(b, TinyList):
            # Concatenation builds a new list; neither operand is mutated.
            return TinyList(list(a) + list(b))
        raise self._mismatch('+', a, b)

    def _sub(self, a, b):
        self._numbers('-', a, b)
        return self._arith('-', operator.sub, a, b)

    def _mul(self, a, b):
        self._numbers('*', a, b)
        return self._arith('*', operator.mul, a, b)

    def _div(self, a, b):
        self._numbers('/', a, b)
        if b == 0:
            raise DivisionByZero("division by zero")
        if isinstance(a, int) and isinstance(b, int) and a % b == 0:
            return a // b
        return self._arith('/', operator.truediv, a, b)

    def _pow(self, b, e):
        self._numbers('^', b, e)
        if b == 0 and e < 0:
            raise DivisionByZero("zero cannot be raised to a negative power")
        if isinstance(b, int) and isinstance(e, int) and e >= 0:
            return b ** e
        try:
            result = float(b) ** e
        except OverflowError:
            raise TinyTypeError("result of '^' is out of range") from None
        if isinstance(result, complex):
            raise TinyTypeError(f"{b} ^ {e} is not a real number")
        return result

    def _eq(self, a, b):
        res = values_equal(a, b)
        self.evaluator._dbg("EQ", type_name(a), id(a), "==", type_name(b), id(b), "->", res)
        return res

    def _neq(self, a, b): return not values_equal(a, b)

    def _compare(self, op, a, b):
        if (_is_number(a) and _is_number(b)) or (isinstance(a, str) and isinstance(b, str)):
            return True
        raise self._mismatch(op, a, b)

    def _gt(self, a, b): return self._compare('>', a, b) and a > b
    def _gte(self, a, b): return self._compare('>=', a, b) and a >= b
    def _lt(self, a, b): return self._compare('<', a, b) and a < b
    def _lte(self, a, b): return self._compare('<=', a, b) and a <= b
    def _not(self, x): return not is_truthy(x)

    def _neg(self, x):
        if not _is_number(x):
            raise self._mismatch('-', x)
        return -x

    # --- Builtins ---
    @tiny_builtin
    def _len(self, collection):
        match collection:
            case TinyList() | TinyDict() | str():
                return len(collection)
            case _:
                raise TinyTypeError(f"len() of {type_name(collection)}")

    @tiny_builtin
    def _push(self, target, value):
        if not isinstance(target, TinyList):
            raise TinyTypeError(f"push() needs a list, got {type_name(target)}")
        target.append(value)
        return target

    @tiny_builtin
    def _keys(self, obj):
        match obj:
            case TinyDict():
                return TinyList(obj.keys())
            case TinyInstance():
                return TinyList(obj.fields.keys())
            case _:
                raise TinyTypeError(f"keys() of {type_name(obj)}")


def parse_scalar(text: str) -> Any:
    """Coerces a command-line word: int, then float, then true/false, else the string."""
    try:
        return int(text)
    except ValueError:
        pass
    try:
        return float(text)
    except ValueError:
        pass
    if text == "true":
        return True
    if text == "false":
        return False
    return text


def load_program_document(data, *, fmt: Optional[str] = None, content_type: Optional[str] = None) -> dict:
    """Reads a raw tagged program tree from JSON or YAML text."""
    try:
        tree = deserialize(data, content_type=content_type, fmt=fmt)
    except ValueError as e:
        raise ProgramError(f"could not read program document: {e}") from e
    if not isinstance(tree, collections.abc.Mapping) or tree.get('tag') != 'program':
        raise ProgramError("program document must contain a 'program' node at the top level")
    return tree


@contextmanager
def _recursion_headroom(max_call_depth: int):
    """Raises the interpreter's recursion limit so max_call_depth is reached first."""
    previous = sys.getrecursionlimit()
    needed = max_call_depth * PY_FRAMES_PER_CALL + 1000
    if needed > previous:
        sys.setrecursionlimit(needed)
    try:
        yield
    finally:
        sys.setrecursionlimit(previous)


# ===================================================================
# 3. Script Execution
# ===================================================================

Token = Dict[str, Any]

@dataclass
class ExecutionResult:
    """The structured result of a program run."""
    status: Literal['success', 'error']
    value: Any = None
    error_kind: Optional[str] = None
    error_message: Optional[str] = None
    error_token: Optional[Token] = None
    error_detail: Dict[str, Any] = field(default_factory=dict)
    error_context: Optional[str] = None
    stacktrace: List[str] = field(default_factory=list)
    phase: Optional[Literal['load', 'run']] = None
    side_effects: List[Dict] = field(default_factory=list)

    @property
    def exit_code(self) -> int:
        """0 success, 1 failed assert, 2 runtime error, 3 program could not be loaded."""
        if self.status == 'success':
            return 0
        if self.phase == 'load':
            return 3
        if self.error_kind == 'AssertionFailure':
            return 1
        return 2

    def format_error(self) -> str:
        """Formats an error message with line and column if available."""
        if self.status != 'error':
            return ""
        msg = str(self.error_message or "Unknown error")

        if self.error_token and self.error_token.get('line') is not None:
            line = self.error_token.get('line')
            col = self.error_token.get('col')
            col_info = f", col {col}" if col is not None else ""
            msg = f"Error on line {line}{col_info}: {msg}"
        if self.error_context:
            msg += "\n" + self.error_context
        if self.stacktrace:
            msg += "\nTiny stacktrace: " + " ".join(self.stacktrace)
        return msg

    def to_report(self) -> dict:
        report = {'status': self.status, 'exit_code': self.exit_code}
        if self.status == 'success':
            report['value'] = self.value
            return report
        report['error'] = {
            'kind': self.error_kind,
            'message': self.error_message,
            'phase': self.phase,
            'line': (self.error_token or {}).get('line'),
            'col': (self.error_token or {}).get('col'),
            'detail': dict(self.error_detail),
            'stacktrace': list(self.stacktrace),
        }
        return report

    def serialize(self, fmt: str = 'json') -> str:
        return serialize(self.to_report(), fmt=fmt)


class ScriptRunner:
    """Transforms and executes TinyScript programs."""

    _transformer: Optional[TinyTransformer] = None

    def __init__(self, entry: Optional[str] = None, max_call_depth: Optional[int] = None):
        self.entry = entry or os.environ.get("TINY_ENTRY") or DEFAULT_ENTRY
        self.max_call_depth = max_call_depth
        if ScriptRunner._transformer is None:
            ScriptRunner._transformer = TinyTransformer()
        self.transformer = ScriptRunner._transformer
        self.printer = Printer()
        # Rebuilt for every run so no state leaks between programs.
        self.evaluator: Optional[Evaluator] = None
        self.source: Optional[str] = None

    def _source_context(self, source: str, line: int, col: Optional[int], radius: int = 2) -> str:
        lines = source.splitlines()
        if not line or line < 1 or line > len(lines):
            return ""
        start = max(1, line - radius)
        end = min(len(lines), line + radius)
        width = len(str(end))
        out = []
        for i in range(start, end + 1):
            prefix = ">" if i == line else " "
            ln = str(i).rjust(width)
            out.append(f"{prefix} {ln} | {lines[i - 1]}")
            if i == line and col is not None:
                caret = " " * max(col - 1, 0)
                out.append(f"  {' ' * width} | {caret}^")
        return "\n".join(out)

    def _format_arg(self, arg) -> str:
        match arg:
            case None | bool() | int() | float() | str():
                return self.printer.pformat(arg)
            case TinyList():
                return f"#[{len(arg)}]"
            case TinyDict():
                return "#{...}"
            case TinyInstance():
                return f"<{arg.klass.name}>"
            case TinyFunction() | BoundMethod():
                return "fn"
            case _:
                return self.printer.pformat(arg)

    def _format_stacktrace(self, frames) -> List[str]:
        out = []
        for frame in frames or []:
            name = frame.get('name') or '<call>'
            args_s = " ".join(self._format_arg(a) for a in frame.get('args') or [])
            out.append(f"({name} {args_s})" if args_s else f"({name})")
        return out

    def _format_runtime_error(self, e: TinyError) -> tuple[str, Optional[dict], Optional[str]]:
        msg = f"{e.kind}: {e.message}"
        token = None
        context = None
        loc = e.loc
        if loc and isinstance(loc, dict):
            line = loc.get('line'); col = loc.get('col')
            token = {'line': line, 'col': col, 'tag': loc.get('tag'), 'text': loc.get('text')}
            if self.source and line is not None:
                context = self._source_context(self.source, line, col) or None
        return msg, token, context

    def _error_result(self, e: TinyError, phase: str) -> ExecutionResult:
        msg, token, context = self._format_runtime_error(e)
        side_effects = self.evaluator.side_effects if self.evaluator is not None else []
        result = ExecutionResult(
            status='error',
            error_kind=e.kind,
            error_message=msg,
            error_token=token,
            error_detail=dict(e.detail),
            error_context=context,
            stacktrace=self._format_stacktrace(e.frames),
            phase=phase,
            side_effects=side_effects,
        )
        # Emit consolidated stderr side-effect
        side_effects.append({'topics': ['stderr'], 'message': result.format_error()})
        return result

    def _to_program(self, program) -> Program:
        if isinstance(program, Program):
            return program
        if not isinstance(program, collections.abc.Mapping):
            raise ProgramError(f"expected a program tree, got {type(program).__name__}")
        transformed = self.transformer.transform(program)
        if not isinstance(transformed, Program):
            raise ProgramError("program tree must have a 'program' node at the top level")
        return transformed

    def handle_program(self, program, *, args: Optional[List[Any]] = None, entry: Optional[str] = None) -> ExecutionResult:
        """Runs the entry point of a raw program tree or a transformed Program."""
        self.evaluator = Evaluator(max_call_depth=self.max_call_depth)
        self.source = None
        entry = entry or self.entry

        # 1. Transform and load
        try:
            program = self._to_program(program)
            self.source = program.source
            self.evaluator.load(program)
            target = self.evaluator.resolve_entry(entry)
        except TinyError as e:
            return self._error_result(e, 'load')

        # 2. Evaluate
        try:
            with _recursion_headroom(self.evaluator.max_call_depth):
                value = self.evaluator.call(target, list(args or []))
        except TinyError as e:
            return self._error_result(e, 'run')
        except RecursionError:
            return self._error_result(StackOverflow(self.evaluator.max_call_depth), 'run')

        return ExecutionResult(
            status='success',
            value=value,
            side_effects=self.evaluator.side_effects,
        )

    def handle_document(self, data, *, fmt: Optional[str] = None, content_type: Optional[str] = None,
                        args: Optional[List[Any]] = None, entry: Optional[str] = None) -> ExecutionResult:
        """Loads a JSON/YAML program document and runs it."""
        try:
            tree = load_program_document(data, fmt=fmt, content_type=content_type)
        except ProgramError as e:
            self.evaluator = None
            return self._error_result(e, 'load')
        return self.handle_program(tree, args=args, entry=entry)
