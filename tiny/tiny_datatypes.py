"""
Defines the core data types for the TinyScript runtime.

This module provides the error taxonomy, the runtime values (containers,
classes, instances, functions), the Scope chain used for variable binding and
the AST node classes produced by the transformer and walked by the evaluator.
"""

from collections import UserDict, UserList
from types import MappingProxyType
from typing import List, Dict, Any, Optional, Tuple


# =================================================================
# Errors
# =================================================================

class TinyError(Exception):
    """Base class for every failure raised while loading or running a program.

    `kind` is the stable name reported to the host, `loc` the location dict
    of the offending node ({'line', 'col', 'tag', 'text'}) when known.
    """
    kind = "TinyError"

    def __init__(self, message: str, loc: Optional[dict] = None, detail: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.loc = loc
        self.detail = detail or {}
        # Call frames live at the point of failure; captured by the evaluator.
        self.frames: Optional[list] = None

    def attach_loc(self, loc: Optional[dict]):
        if self.loc is None and loc:
            self.loc = loc
        return self

    def attach_frames(self, frames: list):
        if self.frames is None:
            self.frames = list(frames)
        return self


class AssertionFailure(TinyError):
    """A falsy `assert`. Carries the asserted source text and a value snapshot."""
    kind = "AssertionFailure"

    def __init__(self, expression_text: str, snapshot: str, loc: Optional[dict] = None, operands: Optional[Tuple[str, str]] = None):
        message = f"assert {expression_text} failed (value: {snapshot})"
        detail = {'expression': expression_text, 'value': snapshot}
        if operands is not None:
            detail['left'], detail['right'] = operands
            message = f"assert {expression_text} failed (left: {operands[0]}, right: {operands[1]})"
        super().__init__(message, loc, detail)
        self.expression_text = expression_text
        self.snapshot = snapshot


class UnboundNameError(TinyError):
    kind = "UnboundNameError"

    def __init__(self, name: str, loc: Optional[dict] = None):
        super().__init__(f"'{name}' is not bound", loc)
        self.name = name


class KeyNotFoundError(TinyError):
    kind = "KeyNotFoundError"

    def __init__(self, key: Any, loc: Optional[dict] = None):
        super().__init__(f"key {key!r} not found", loc)
        self.key = key


class IndexOutOfRange(KeyNotFoundError):
    """List index outside the list; reported as a KeyNotFoundError."""

    def __init__(self, index: int, length: int, loc: Optional[dict] = None):
        super().__init__(index, loc)
        self.message = f"index {index} out of range for list of length {length}"
        self.args = (self.message,)


class MemberNotFoundError(TinyError):
    kind = "MemberNotFoundError"

    def __init__(self, owner: str, member: str, loc: Optional[dict] = None):
        super().__init__(f"{owner} has no member '{member}'", loc)
        self.member = member


class ArityError(TinyError):
    kind = "ArityError"

    def __init__(self, name: str, expected: int, got: int, loc: Optional[dict] = None):
        super().__init__(f"{name} expects {expected} argument(s), got {got}", loc)
        self.expected = expected
        self.got = got


class RedefinitionError(TinyError):
    kind = "RedefinitionError"

    def __init__(self, name: str, loc: Optional[dict] = None):
        super().__init__(f"'{name}' is already defined in this scope", loc)
        self.name = name


class StackOverflow(TinyError):
    kind = "StackOverflow"

    def __init__(self, depth: int, loc: Optional[dict] = None):
        super().__init__(f"maximum call depth of {depth} exceeded", loc)
        self.depth = depth


class TinyTypeError(TinyError):
    """An operator, path or call applied to an incompatible value."""
    kind = "TypeMismatch"


class DivisionByZero(TinyTypeError):
    kind = "DivisionByZero"


class ProgramError(TinyError):
    """Malformed program tree or unresolvable entry point."""
    kind = "ProgramError"


# =================================================================
# Runtime Values
# =================================================================

class TinyDict(UserDict):
    """An insertion-ordered dict value, shared by reference.

    Equality and hashing are identity based: two dict values are equal only
    when they are the same container.
    """

    def __hash__(self):
        return id(self)

    def __eq__(self, other):
        if isinstance(other, TinyDict):
            return self is other
        return super().__eq__(other)

    def __repr__(self):
        from tiny.tiny_printer import Printer
        return Printer().pformat(self)


class TinyList(UserList):
    """An ordered list value, shared by reference (identity equality)."""

    def __hash__(self):
        return id(self)

    def __eq__(self, other):
        if isinstance(other, TinyList):
            return self is other
        return super().__eq__(other)

    def __repr__(self):
        from tiny.tiny_printer import Printer
        return Printer().pformat(self)


class TinyFunction:
    """A declared function: free when `owner` is None, otherwise a method."""

    def __init__(self, name: str, params: List[str], body: List['Node'], owner: Optional['TinyClass'] = None, loc: Optional[dict] = None):
        self.name = name
        self.params = list(params)
        self.body = body
        self.owner = owner
        self.loc = loc

    @property
    def qualified_name(self) -> str:
        return f"{self.owner.name}.{self.name}" if self.owner is not None else self.name

    def __repr__(self) -> str:
        return f"<TinyFunction {self.qualified_name}/{len(self.params)}>"


class TinyClass:
    """A class: its name, ordered field initializers and read-only method table."""

    def __init__(self, name: str, methods: Dict[str, TinyFunction], fields: Optional[List['FieldDecl']] = None, loc: Optional[dict] = None):
        self.name = name
        for fn in methods.values():
            fn.owner = self
        self.methods = MappingProxyType(dict(methods))
        self.fields = tuple(fields or ())
        self.loc = loc

    def find_method(self, name: str) -> Optional[TinyFunction]:
        return self.methods.get(name)

    def __repr__(self) -> str:
        return f"<TinyClass {self.name} methods=[{', '.join(self.methods)}]>"


class TinyInstance:
    """An object: a non-owning class reference plus its own field table."""

    def __init__(self, klass: TinyClass):
        self.klass = klass
        self.fields = TinyDict()

    def lookup(self, name: str) -> Tuple[bool, Any]:
        """Field table first, then the class's methods bound to this instance."""
        if name in self.fields:
            return True, self.fields[name]
        method = self.klass.find_method(name)
        if method is not None:
            return True, BoundMethod(self, method)
        return False, None

    def __repr__(self) -> str:
        return f"<TinyInstance of {self.klass.name} fields=[{', '.join(self.fields)}]>"


class BoundMethod:
    """A method read off an instance (`obj.m`), remembering the receiver."""

    def __init__(self, instance: TinyInstance, function: TinyFunction):
        self.instance = instance
        self.function = function

    def __eq__(self, other):
        if not isinstance(other, BoundMethod):
            return NotImplemented
        return self.instance is other.instance and self.function is other.function

    def __hash__(self):
        return hash((id(self.instance), id(self.function)))

    def __repr__(self) -> str:
        return f"<BoundMethod {self.function.qualified_name}>"


CONTAINER_TYPES = (TinyList, TinyDict, TinyInstance)


def type_name(value: Any) -> str:
    """The language-level name of a value's variant."""
    match value:
        case None:
            return "null"
        case bool():
            return "bool"
        case int() | float():
            return "number"
        case str():
            return "string"
        case TinyList():
            return "list"
        case TinyDict():
            return "dict"
        case TinyInstance():
            return f"instance of {value.klass.name}"
        case TinyClass():
            return "class"
        case TinyFunction() | BoundMethod():
            return "function"
        case _ if callable(value):
            return "builtin"
        case _:
            return type(value).__name__


def is_truthy(value: Any) -> bool:
    """Only `false` and `null` are falsy; 0, "" and empty containers are truthy."""
    return not (value is None or value is False)


def values_equal(a: Any, b: Any) -> bool:
    """`==` semantics: structural for scalars, identity for everything else."""
    match a, b:
        case (None, None):
            return True
        case (bool(), bool()):
            return a is b
        case (bool(), _) | (_, bool()):
            return False
        case (int() | float(), int() | float()):
            return a == b
        case (str(), str()):
            return a == b
        case (BoundMethod(), BoundMethod()):
            return a == b
        case _:
            return a is b


# =================================================================
# Environment
# =================================================================

class Scope:
    """A single scope of the environment chain.

    Lookups walk innermost-first through `parent`. Defining a name twice in
    the same scope is an error, and assignment never creates a binding.
    """

    def __init__(self, parent: Optional['Scope'] = None, name: str = "scope"):
        self.bindings: Dict[str, Any] = {}
        self.parent = parent
        self.name = name

    def define(self, name: str, value: Any, loc: Optional[dict] = None):
        if name in self.bindings:
            raise RedefinitionError(name, loc)
        self.bindings[name] = value

    def find_owner(self, name: str) -> Optional['Scope']:
        scope = self
        while scope is not None:
            if name in scope.bindings:
                return scope
            scope = scope.parent
        return None

    def get(self, name: str, loc: Optional[dict] = None) -> Any:
        owner = self.find_owner(name)
        if owner is None:
            raise UnboundNameError(name, loc)
        return owner.bindings[name]

    def set(self, name: str, value: Any, loc: Optional[dict] = None):
        owner = self.find_owner(name)
        if owner is None:
            raise UnboundNameError(name, loc)
        owner.bindings[name] = value

    def __contains__(self, name: Any) -> bool:
        return isinstance(name, str) and self.find_owner(name) is not None

    def __getitem__(self, name: str) -> Any:
        return self.get(name)

    def keys(self):
        """Names bound in this scope only."""
        return self.bindings.keys()

    def __repr__(self) -> str:
        keys = ', '.join(self.bindings.keys())
        parent_id = f", parent=#{id(self.parent)}" if self.parent else ""
        return f"<Scope {self.name} bindings=[{keys}]{parent_id}>"


# =================================================================
# Class Registry
# =================================================================

class ClassRegistry:
    """Maps class names to classes for one program run."""

    def __init__(self):
        self._classes: Dict[str, TinyClass] = {}

    def declare(self, klass: TinyClass) -> TinyClass:
        if klass.name in self._classes:
            raise RedefinitionError(klass.name, klass.loc)
        self._classes[klass.name] = klass
        return klass

    def lookup(self, name: str) -> Optional[TinyClass]:
        return self._classes.get(name)

    def instantiate(self, name: str, loc: Optional[dict] = None) -> TinyInstance:
        """A fresh instance with an empty field table; initializers run in the evaluator."""
        klass = self._classes.get(name)
        if klass is None:
            raise UnboundNameError(name, loc)
        return TinyInstance(klass)

    def __contains__(self, name: Any) -> bool:
        return name in self._classes

    def __iter__(self):
        return iter(self._classes.values())

    def __len__(self) -> int:
        return len(self._classes)


# =================================================================
# AST Nodes
# =================================================================

class Node:
    """Base class for AST nodes. Subclasses list their attributes in `_fields`."""
    _fields: Tuple[str, ...] = ()
    loc: Optional[dict] = None

    def __eq__(self, other):
        if type(other) is not type(self):
            return NotImplemented
        return all(getattr(self, f) == getattr(other, f) for f in self._fields)

    __hash__ = None

    def __repr__(self) -> str:
        inner = ", ".join(f"{getattr(self, f)!r}" for f in self._fields)
        return f"{type(self).__name__}({inner})"


# --- Declarations ---

class Program(Node):
    _fields = ('classes', 'functions')

    def __init__(self, classes: List['ClassDecl'], functions: Optional[List['FunctionDecl']] = None, source: Optional[str] = None):
        self.classes = list(classes)
        self.functions = list(functions or [])
        # Full source text, when the parser supplied it; used for error context.
        self.source = source


class ClassDecl(Node):
    _fields = ('name', 'fields', 'methods')

    def __init__(self, name: str, fields: List['FieldDecl'], methods: List['FunctionDecl']):
        self.name = name
        self.fields = list(fields)
        self.methods = list(methods)


class FieldDecl(Node):
    _fields = ('name', 'init')

    def __init__(self, name: str, init: Node):
        self.name = name
        self.init = init


class FunctionDecl(Node):
    _fields = ('name', 'params', 'body')

    def __init__(self, name: str, params: List[str], body: List[Node]):
        self.name = name
        self.params = list(params)
        self.body = list(body)


# --- Statements ---

class Let(Node):
    _fields = ('name', 'init')

    def __init__(self, name: str, init: Node):
        self.name = name
        self.init = init


class Assign(Node):
    """`name = value` or `root.k1[k2] = value`; target is an Ident or a SetPath."""
    _fields = ('target', 'value')

    def __init__(self, target: Node, value: Node):
        self.target = target
        self.value = value


class ExprStmt(Node):
    _fields = ('expr',)

    def __init__(self, expr: Node):
        self.expr = expr


class Assert(Node):
    _fields = ('expr', 'source')

    def __init__(self, expr: Node, source: Optional[str] = None):
        self.expr = expr
        self.source = source


class Print(Node):
    _fields = ('expr',)

    def __init__(self, expr: Node):
        self.expr = expr


class If(Node):
    _fields = ('cond', 'then_body', 'else_body')

    def __init__(self, cond: Node, then_body: List[Node], else_body: Optional[List[Node]] = None):
        self.cond = cond
        self.then_body = list(then_body)
        self.else_body = list(else_body) if else_body is not None else None


class While(Node):
    _fields = ('cond', 'body')

    def __init__(self, cond: Node, body: List[Node]):
        self.cond = cond
        self.body = list(body)


class ForIn(Node):
    _fields = ('var', 'iterable', 'body')

    def __init__(self, var: str, iterable: Node, body: List[Node]):
        self.var = var
        self.iterable = iterable
        self.body = list(body)


class ForRange(Node):
    """`for i = start to stop step step { ... }`, inclusive of `stop`."""
    _fields = ('var', 'start', 'stop', 'step', 'body')

    def __init__(self, var: str, start: Node, stop: Node, step: Optional[Node], body: List[Node]):
        self.var = var
        self.start = start
        self.stop = stop
        self.step = step
        self.body = list(body)


class Return(Node):
    _fields = ('value',)

    def __init__(self, value: Optional[Node] = None):
        self.value = value


# --- Expressions ---

class Literal(Node):
    _fields = ('value',)

    def __init__(self, value: Any):
        self.value = value

    def __eq__(self, other):
        # Keep 1 and True apart.
        if type(other) is not Literal:
            return NotImplemented
        return type(self.value) is type(other.value) and self.value == other.value


class ListLiteral(Node):
    _fields = ('items',)

    def __init__(self, items: List[Node]):
        self.items = list(items)


class DictLiteral(Node):
    _fields = ('entries',)

    def __init__(self, entries: List[Tuple[str, Node]]):
        self.entries = list(entries)


class Ident(Node):
    """A bare variable reference."""
    _fields = ('name',)

    def __init__(self, name: str):
        self.name = name


class SelfRef(Node):
    """The `self` keyword."""


class PathSegment(Node):
    """Abstract base class for the segments of a path."""


class Member(PathSegment):
    """A member segment, e.g. `.name` in `user.name`."""
    _fields = ('name',)

    def __init__(self, name: str):
        self.name = name


class Index(PathSegment):
    """An index segment, e.g. `[0]` or `["key"]`."""
    _fields = ('expr',)

    def __init__(self, expr: Node):
        self.expr = expr


class GetPath(Node):
    """A chained read: a root expression followed by member/index segments."""
    _fields = ('root', 'segments')

    def __init__(self, root: Node, segments: List[PathSegment]):
        if not segments:
            raise ValueError("GetPath must have at least one segment.")
        self.root = root
        self.segments = list(segments)


class SetPath(Node):
    """The target of a chained write; same shape as GetPath."""
    _fields = ('root', 'segments')

    def __init__(self, root: Node, segments: List[PathSegment]):
        if not segments:
            raise ValueError("SetPath must have at least one segment.")
        self.root = root
        self.segments = list(segments)


class Call(Node):
    _fields = ('callee', 'args')

    def __init__(self, callee: Node, args: List[Node]):
        self.callee = callee
        self.args = list(args)


class New(Node):
    _fields = ('class_name', 'args')

    def __init__(self, class_name: str, args: List[Node]):
        self.class_name = class_name
        self.args = list(args)


class BinaryOp(Node):
    _fields = ('op', 'left', 'right')

    def __init__(self, op: str, left: Node, right: Node):
        self.op = op
        self.left = left
        self.right = right


class UnaryOp(Node):
    _fields = ('op', 'operand')

    def __init__(self, op: str, operand: Node):
        self.op = op
        self.operand = operand
