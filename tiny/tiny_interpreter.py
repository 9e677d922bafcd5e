"""
The core TinyScript interpreter, containing the Evaluator and PathResolver.
"""
import inspect
import os
import sys
from typing import Any, List, Optional, Tuple

from tiny.tiny_datatypes import (
    TinyError, KeyNotFoundError, IndexOutOfRange, MemberNotFoundError,
    ArityError, RedefinitionError, StackOverflow, TinyTypeError, AssertionFailure, ProgramError,
    TinyDict, TinyList, TinyFunction, TinyClass, TinyInstance, BoundMethod,
    Scope, ClassRegistry, type_name, is_truthy,
    Program, ClassDecl,
    Let, Assign, ExprStmt, Assert, Print, If, While, ForIn, ForRange, Return,
    Literal, ListLiteral, DictLiteral, Ident, SelfRef, PathSegment, Member, Index,
    GetPath, SetPath, Call, New, BinaryOp, UnaryOp,
)
from tiny.tiny_printer import Printer

DEFAULT_MAX_CALL_DEPTH = 256

COMPARISON_OPERATORS = frozenset({'==', '!=', '<', '<=', '>', '>='})

# Operator symbol -> StdLib method name
BINARY_OPERATOR_METHODS = {
    '+': '_add',
    '-': '_sub',
    '*': '_mul',
    '/': '_div',
    '^': '_pow',
    '==': '_eq',
    '!=': '_neq',
    '<': '_lt',
    '<=': '_lte',
    '>': '_gt',
    '>=': '_gte',
}


class ReturnSignal:
    """Control-flow marker produced by `return`; unwrapped when leaving a call."""
    __slots__ = ('value',)

    def __init__(self, value: Any = None):
        self.value = value

    def __repr__(self):
        return f"<ReturnSignal {self.value!r}>"


# Helper: identify and unwrap control-flow "return" signals
def is_return(x) -> bool:
    return isinstance(x, ReturnSignal)

def unwrap_return(x):
    return x.value if is_return(x) else x


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None
    if value < 1:
        raise ValueError(f"{name} must be at least 1, got {value}")
    return value


class PathResolver:
    """Handles chained member/index reads and writes (`a.b[k].c`)."""
    def __init__(self, evaluator: 'Evaluator'):
        self.evaluator = evaluator

    def _segment_key(self, segment: PathSegment, scope: Scope) -> Any:
        match segment:
            case Member(name=name):
                return name
            case Index(expr=expr):
                return self.evaluator.eval(expr, scope)
            case _:
                raise TypeError(f"Unsupported path segment: {segment!r}")

    def _string_key(self, container, key, segment):
        if not isinstance(key, str):
            raise TinyTypeError(f"{type_name(container)} keys must be strings, got {type_name(key)}", segment.loc)
        return key

    def _list_index(self, container: TinyList, key, segment) -> int:
        if isinstance(segment, Member):
            raise TinyTypeError(f"list has no member '{key}'", segment.loc)
        if isinstance(key, bool) or not isinstance(key, int):
            raise TinyTypeError(f"list indices must be integers, got {type_name(key)}", segment.loc)
        if not 0 <= key < len(container):
            raise IndexOutOfRange(key, len(container), segment.loc)
        return key

    def _step(self, container: Any, key: Any, segment: PathSegment) -> Any:
        """Reads one segment out of `container`."""
        match container:
            case TinyDict():
                key = self._string_key(container, key, segment)
                if key not in container:
                    raise KeyNotFoundError(key, segment.loc)
                return container[key]
            case TinyInstance():
                key = self._string_key(container, key, segment)
                found, value = container.lookup(key)
                if not found:
                    raise MemberNotFoundError(f"{container.klass.name} instance", key, segment.loc)
                return value
            case TinyClass():
                if isinstance(segment, Index):
                    raise TinyTypeError(f"class {container.name} cannot be indexed", segment.loc)
                method = container.find_method(key)
                if method is None:
                    raise MemberNotFoundError(f"class {container.name}", key, segment.loc)
                return method
            case TinyList():
                return container[self._list_index(container, key, segment)]
            case _:
                raise TinyTypeError(f"cannot read {key!r} from {type_name(container)}", segment.loc)

    def _resolve(self, path: GetPath | SetPath, scope: Scope) -> Tuple[Any, Any, PathSegment]:
        """
        Traverses a path to find the container object and the final key.
        Returns (container, key, final_segment).
        """
        container = self.evaluator.eval(path.root, scope)
        for segment in path.segments[:-1]:
            key = self._segment_key(segment, scope)
            container = self._step(container, key, segment)
        final = path.segments[-1]
        return container, self._segment_key(final, scope), final

    def get(self, path: GetPath, scope: Scope) -> Any:
        """Resolves a GetPath to get a value."""
        container, key, segment = self._resolve(path, scope)
        return self._step(container, key, segment)

    def set(self, path: SetPath, value: Any, scope: Scope) -> Any:
        """Resolves a SetPath and writes `value` (already evaluated) into the reached container."""
        container, key, segment = self._resolve(path, scope)
        self._write(container, key, segment, value)
        self.evaluator._dbg("PathResolver.set", type_name(container), repr(key))
        return value

    def _write(self, container: Any, key: Any, segment: PathSegment, value: Any):
        match container:
            case TinyDict():
                container[self._string_key(container, key, segment)] = value
            case TinyInstance():
                # Fields shadow methods; the method table itself is never touched.
                container.fields[self._string_key(container, key, segment)] = value
            case TinyList():
                container[self._list_index(container, key, segment)] = value
            case TinyClass():
                raise TinyTypeError(f"class {container.name} is immutable", segment.loc)
            case _:
                raise TinyTypeError(f"cannot set {key!r} on {type_name(container)}", segment.loc)


class Evaluator:
    """The TinyScript execution engine."""

    def __init__(self, max_call_depth: Optional[int] = None):
        from tiny.tiny_runtime import StdLib
        self.path_resolver = PathResolver(self)
        self.side_effects: List[dict] = []
        self.call_stack: List[dict] = []
        self.current_node = None
        if max_call_depth is None:
            max_call_depth = _env_int("TINY_MAX_CALL_DEPTH", DEFAULT_MAX_CALL_DEPTH)
        if max_call_depth < 1:
            raise ValueError(f"max_call_depth must be at least 1, got {max_call_depth}")
        self.max_call_depth = max_call_depth
        self.global_scope = Scope(name="global")
        self.classes = ClassRegistry()
        self.printer = Printer()
        self.stdlib = StdLib(self)
        self.stdlib.bind(self.global_scope)

    # --- Frames and diagnostics ---

    def _push_frame(self, name, func, args, self_obj, call_site_node, klass=None):
        loc = getattr(call_site_node, 'loc', call_site_node if isinstance(call_site_node, dict) else None)
        self.call_stack.append({
            'name': name,
            'func': func,
            'args': args,
            'self': self_obj,
            'class': klass if klass is not None else getattr(func, 'owner', None),
            'call_site': loc,
        })

    def _pop_frame(self):
        if self.call_stack:
            self.call_stack.pop()

    def _dbg(self, *parts):
        if os.environ.get("TINY_DEBUG"):
            print("[DBG]", *parts, file=sys.stderr)

    # --- Loading ---

    def load(self, program: Program):
        """Registers the program's classes and free functions in the global scope."""
        for decl in program.classes:
            klass = self.classes.declare(self._build_class(decl))
            self.global_scope.define(klass.name, klass, decl.loc)
        for decl in program.functions:
            fn = TinyFunction(decl.name, decl.params, decl.body, loc=decl.loc)
            self.global_scope.define(decl.name, fn, decl.loc)
        self._dbg("Evaluator.load", "classes", len(program.classes), "functions", len(program.functions))

    def _build_class(self, decl: ClassDecl) -> TinyClass:
        methods = {}
        for m in decl.methods:
            if m.name in methods:
                raise RedefinitionError(f"{decl.name}.{m.name}", m.loc)
            if 'self' in m.params:
                # `self` is bound by the call, never by an argument.
                raise ProgramError(f"method {decl.name}.{m.name} cannot take a parameter named 'self'", m.loc)
            methods[m.name] = TinyFunction(m.name, m.params, m.body, loc=m.loc)
        seen = set()
        for f in decl.fields:
            if f.name in seen:
                raise RedefinitionError(f"{decl.name}.{f.name}", f.loc)
            seen.add(f.name)
        return TinyClass(decl.name, methods, decl.fields, loc=decl.loc)

    def resolve_entry(self, entry: str):
        """Finds the entry point named "Class.method" or "function"."""
        class_name, _, method_name = entry.rpartition('.')
        if class_name:
            klass = self.classes.lookup(class_name)
            if klass is None:
                raise ProgramError(f"entry point class '{class_name}' is not defined")
            method = klass.find_method(method_name)
            if method is None:
                raise ProgramError(f"entry point method '{entry}' is not defined")
            return method
        fn = self.global_scope.bindings.get(method_name)
        if not isinstance(fn, TinyFunction):
            raise ProgramError(f"entry point function '{method_name}' is not defined")
        return fn

    # --- Statements ---

    def execute_block(self, statements: List[Any], scope: Scope) -> Any:
        """Runs statements in order; stops at the first `return` and hands its signal back."""
        for stmt in statements:
            result = self._exec(stmt, scope)
            if is_return(result):
                return result
        return None

    def _exec(self, node: Any, scope: Scope) -> Any:
        self.current_node = node
        try:
            return self._exec_node(node, scope)
        except TinyError as e:
            raise e.attach_loc(node.loc)

    def _exec_node(self, node: Any, scope: Scope) -> Any:
        match node:
            case Let(name=name, init=init):
                scope.define(name, self.eval(init, scope), node.loc)
            case Assign(target=target, value=value_node):
                value = self.eval(value_node, scope)
                match target:
                    case Ident(name=name):
                        scope.set(name, value, target.loc)
                    case SetPath():
                        self.path_resolver.set(target, value, scope)
                    case _:
                        raise ProgramError(f"invalid assignment target {target!r}", node.loc)
            case ExprStmt(expr=expr):
                self.eval(expr, scope)
            case Assert():
                self._exec_assert(node, scope)
            case Print(expr=expr):
                value = self.eval(expr, scope)
                self.side_effects.append({'topics': ['stdout'], 'message': self.printer.to_display(value)})
            case If(cond=cond, then_body=then_body, else_body=else_body):
                if is_truthy(self.eval(cond, scope)):
                    return self.execute_block(then_body, Scope(parent=scope, name="block"))
                if else_body is not None:
                    return self.execute_block(else_body, Scope(parent=scope, name="block"))
            case While(cond=cond, body=body):
                while is_truthy(self.eval(cond, scope)):
                    result = self.execute_block(body, Scope(parent=scope, name="block"))
                    if is_return(result):
                        return result
            case ForIn():
                return self._exec_for_in(node, scope)
            case ForRange():
                return self._exec_for_range(node, scope)
            case Return(value=value):
                return ReturnSignal(self.eval(value, scope) if value is not None else None)
            case _:
                raise ProgramError(f"unsupported statement {node!r}", getattr(node, 'loc', None))
        return None

    def _exec_for_in(self, node: ForIn, scope: Scope):
        iterable = self.eval(node.iterable, scope)
        match iterable:
            case TinyList():
                items = list(iterable)
            case TinyDict():
                items = list(iterable.keys())
            case _:
                raise TinyTypeError(f"cannot iterate over {type_name(iterable)}", node.iterable.loc)
        for item in items:
            body_scope = Scope(parent=scope, name="block")
            body_scope.define(node.var, item, node.loc)
            result = self.execute_block(node.body, body_scope)
            if is_return(result):
                return result
        return None

    def _exec_for_range(self, node: ForRange, scope: Scope):
        bounds = [self.eval(node.start, scope), self.eval(node.stop, scope)]
        bounds.append(self.eval(node.step, scope) if node.step is not None else 1)
        for b in bounds:
            if isinstance(b, bool) or not isinstance(b, (int, float)):
                raise TinyTypeError(f"range bounds must be numbers, got {type_name(b)}", node.loc)
        i, stop, step = bounds
        if step == 0:
            raise TinyTypeError("range step must not be zero", node.loc)
        while (i <= stop) if step > 0 else (i >= stop):
            body_scope = Scope(parent=scope, name="block")
            body_scope.define(node.var, i, node.loc)
            result = self.execute_block(node.body, body_scope)
            if is_return(result):
                return result
            i = i + step
        return None

    def _exec_assert(self, node: Assert, scope: Scope):
        expr = node.expr
        operands = None
        if isinstance(expr, BinaryOp) and expr.op in COMPARISON_OPERATORS:
            # Keep both operands so the failure can show them.
            left = self.eval(expr.left, scope)
            right = self.eval(expr.right, scope)
            try:
                value = self._apply_binary(expr.op, left, right)
            except TinyError as e:
                raise e.attach_loc(expr.loc)
            operands = (self.printer.pformat(left), self.printer.pformat(right))
        else:
            value = self.eval(expr, scope)
        if is_truthy(value):
            return
        text = node.source if node.source else self.printer.pformat(expr)
        self._dbg("Assert failed", text)
        raise AssertionFailure(text, self.printer.pformat(value), node.loc, operands)

    # --- Expressions ---

    def eval(self, node: Any, scope: Scope) -> Any:
        """Evaluates an expression node to a value."""
        self.current_node = node
        try:
            return self._eval(node, scope)
        except TinyError as e:
            raise e.attach_loc(node.loc)

    def _eval(self, node: Any, scope: Scope) -> Any:
        match node:
            case Literal(value=value):
                return value
            case ListLiteral(items=items):
                return TinyList([self.eval(item, scope) for item in items])
            case DictLiteral(entries=entries):
                result = TinyDict()
                for key, value_node in entries:
                    result[key] = self.eval(value_node, scope)
                return result
            case Ident(name=name):
                return scope.get(name, node.loc)
            case SelfRef():
                return scope.get('self', node.loc)
            case GetPath():
                return self.path_resolver.get(node, scope)
            case Call():
                return self._eval_call(node, scope)
            case New():
                return self._eval_new(node, scope)
            case BinaryOp(op='&&', left=left, right=right):
                return is_truthy(self.eval(left, scope)) and is_truthy(self.eval(right, scope))
            case BinaryOp(op='||', left=left, right=right):
                return is_truthy(self.eval(left, scope)) or is_truthy(self.eval(right, scope))
            case BinaryOp(op=op, left=left, right=right):
                return self._apply_binary(op, self.eval(left, scope), self.eval(right, scope))
            case UnaryOp(op='!', operand=operand):
                return not is_truthy(self.eval(operand, scope))
            case UnaryOp(op='-', operand=operand):
                return self.stdlib._neg(self.eval(operand, scope))
            case _:
                raise ProgramError(f"cannot evaluate {node!r}", getattr(node, 'loc', None))

    def _apply_binary(self, op: str, left: Any, right: Any) -> Any:
        method = BINARY_OPERATOR_METHODS.get(op)
        if method is None:
            raise ProgramError(f"unknown operator {op!r}")
        return getattr(self.stdlib, method)(left, right)

    def _eval_call(self, node: Call, scope: Scope) -> Any:
        callee = node.callee
        self_obj = None
        if isinstance(callee, Ident):
            target, self_obj = self._resolve_bare_callee(callee, scope)
        else:
            # Instance reads yield bound methods (fields first), class reads
            # yield unbound methods and dict reads yield the stored value.
            target = self.eval(callee, scope)
        args = [self.eval(arg, scope) for arg in node.args]
        return self.call(target, args, self_obj=self_obj, call_site=node)

    def _resolve_bare_callee(self, callee: Ident, scope: Scope) -> Tuple[Any, Any]:
        """A bare `m(...)` inside a method prefers the enclosing class's methods."""
        if self.call_stack:
            frame = self.call_stack[-1]
            klass = frame.get('class')
            if klass is not None:
                method = klass.find_method(callee.name)
                if method is not None:
                    return method, frame.get('self')
        return scope.get(callee.name, callee.loc), None

    def _eval_new(self, node: New, scope: Scope) -> TinyInstance:
        instance = self.classes.instantiate(node.class_name, node.loc)
        klass = instance.klass
        if klass.fields:
            self._init_fields(instance, node)
        args = [self.eval(arg, scope) for arg in node.args]
        init = klass.find_method('init')
        if init is not None:
            self._invoke(init, args, instance, node)
        elif args:
            raise ArityError(f"new {klass.name}", 0, len(args), node.loc)
        return instance

    def _init_fields(self, instance: TinyInstance, node: New):
        """Runs field initializers under a `new Class` frame, so bare calls
        resolve against the class being constructed. `self` stays unbound."""
        klass = instance.klass
        if len(self.call_stack) >= self.max_call_depth:
            raise StackOverflow(self.max_call_depth, node.loc)
        field_scope = Scope(parent=self.global_scope, name=f"{klass.name}.fields")
        self._push_frame(f"new {klass.name}", None, [], None, node, klass=klass)
        try:
            for decl in klass.fields:
                instance.fields[decl.name] = self.eval(decl.init, field_scope)
        except TinyError as e:
            e.attach_frames(self.call_stack)
            raise
        finally:
            self._pop_frame()

    # --- Calls ---

    def call(self, target: Any, args: List[Any], self_obj: Any = None, call_site: Any = None) -> Any:
        """Calls a callable value (function, bound method or builtin)."""
        self._dbg("Evaluator.call", type_name(target), "argc", len(args))
        match target:
            case BoundMethod():
                return self._invoke(target.function, args, target.instance, call_site)
            case TinyFunction():
                return self._invoke(target, args, self_obj, call_site)
            case TinyClass():
                raise TinyTypeError(f"class {target.name} is not callable; use 'new {target.name}(...)'", getattr(call_site, 'loc', None))
            case _ if callable(target):
                return self._call_builtin(target, args, call_site)
            case _:
                raise TinyTypeError(f"{type_name(target)} is not callable", getattr(call_site, 'loc', None))

    def _call_builtin(self, func, args, call_site):
        name = getattr(func, '__name__', 'builtin').lstrip('_')
        sig = inspect.signature(func)
        try:
            sig.bind(*args)
        except TypeError:
            raise ArityError(name, len(sig.parameters), len(args), getattr(call_site, 'loc', None)) from None
        if len(self.call_stack) >= self.max_call_depth:
            raise StackOverflow(self.max_call_depth, getattr(call_site, 'loc', None))
        self._push_frame(name, func, args, None, call_site)
        try:
            return func(*args)
        except TinyError as e:
            e.attach_frames(self.call_stack)
            raise
        finally:
            self._pop_frame()

    def _invoke(self, func: TinyFunction, args: List[Any], self_obj: Any, call_site: Any) -> Any:
        loc = getattr(call_site, 'loc', None)
        if len(args) != len(func.params):
            raise ArityError(func.qualified_name, len(func.params), len(args), loc)
        if len(self.call_stack) >= self.max_call_depth:
            raise StackOverflow(self.max_call_depth, loc)

        call_scope = Scope(parent=self.global_scope, name=func.qualified_name)
        if self_obj is not None:
            call_scope.define('self', self_obj)
        for param, arg in zip(func.params, args):
            call_scope.define(param, arg, func.loc)

        self._push_frame(func.qualified_name, func, args, self_obj, call_site)
        self._dbg("Call", func.qualified_name, "depth", len(self.call_stack))
        try:
            result = self.execute_block(func.body, call_scope)
        except TinyError as e:
            e.attach_frames(self.call_stack)
            raise
        except RecursionError as e:
            # The host stack ran out before max_call_depth did.
            raise StackOverflow(len(self.call_stack), loc).attach_frames(self.call_stack) from e
        finally:
            self._pop_frame()
        value = unwrap_return(result)
        self._dbg("Return", func.qualified_name, type_name(value))
        return value
