"""
A pretty-printer for TinyScript values and expressions.
"""
import json

from tiny.tiny_datatypes import (
    TinyDict, TinyList, TinyInstance, TinyClass, TinyFunction, BoundMethod,
    Node, Literal, ListLiteral, DictLiteral, Ident, SelfRef,
    Member, Index, GetPath, SetPath, Call, New, BinaryOp, UnaryOp,
)

# Binding strength of binary operators, loosest first.
_PRECEDENCE = {
    '||': 1,
    '&&': 2,
    '==': 3, '!=': 3, '<': 3, '<=': 3, '>': 3, '>=': 3,
    '+': 4, '-': 4,
    '*': 5, '/': 5,
    '^': 6,
}
_UNARY_PRECEDENCE = 7


class Printer:
    """Formats runtime values and expression nodes as TinyScript source text."""

    def __init__(self, max_depth=8):
        self.max_depth = max_depth
        self._handlers = self._create_handlers()

    def pformat(self, obj, level=0):
        """Public entry point to format an object."""
        handler = self._get_handler(obj)
        return handler(obj, level)

    def to_display(self, obj):
        """Text written by `print`: strings appear without quotes."""
        if isinstance(obj, str):
            return obj
        return self.pformat(obj)

    def _get_handler(self, obj):
        """Dispatcher to find the correct formatting method."""
        obj_type = type(obj)
        if obj_type in self._handlers:
            return self._handlers[obj_type]
        if isinstance(obj, Node):
            return lambda o, l: repr(o)
        if callable(obj):
            return self._pformat_builtin
        # Default to Python's repr for unknown types
        return lambda o, l: repr(o)

    def _create_handlers(self):
        return {
            str: self._pformat_str,
            int: self._pformat_primitive,
            float: self._pformat_float,
            bool: self._pformat_bool,
            type(None): self._pformat_none,
            TinyList: self._pformat_list,
            TinyDict: self._pformat_dict,
            TinyInstance: self._pformat_instance,
            TinyClass: self._pformat_class,
            TinyFunction: self._pformat_function,
            BoundMethod: self._pformat_bound_method,
            Literal: self._pformat_literal,
            ListLiteral: self._pformat_list_literal,
            DictLiteral: self._pformat_dict_literal,
            Ident: self._pformat_ident,
            SelfRef: self._pformat_self,
            GetPath: self._pformat_path,
            SetPath: self._pformat_path,
            Member: self._pformat_member,
            Index: self._pformat_index,
            Call: self._pformat_call,
            New: self._pformat_new,
            BinaryOp: self._pformat_binary,
            UnaryOp: self._pformat_unary,
        }

    # --- Values ---

    def _pformat_primitive(self, obj, level):
        return str(obj)

    def _pformat_float(self, obj, level):
        return repr(obj)

    def _pformat_str(self, obj, level):
        return json.dumps(obj, ensure_ascii=False)

    def _pformat_bool(self, obj, level):
        return 'true' if obj else 'false'

    def _pformat_none(self, obj, level):
        return 'null'

    def _pformat_list(self, obj, level):
        if level >= self.max_depth:
            return '[...]'
        return "[" + ", ".join(self.pformat(item, level + 1) for item in obj) + "]"

    def _pformat_dict(self, obj, level):
        if not obj:
            return "{}"
        if level >= self.max_depth:
            return '{...}'
        entries = [f"{self._pformat_str(str(k), level)}: {self.pformat(v, level + 1)}" for k, v in obj.items()]
        return "{" + ", ".join(entries) + "}"

    def _pformat_instance(self, obj, level):
        if not obj.fields:
            return f"<{obj.klass.name} instance>"
        return f"<{obj.klass.name} instance {self._pformat_dict(obj.fields, level)}>"

    def _pformat_class(self, obj, level):
        return f"<class {obj.name}>"

    def _pformat_function(self, obj, level):
        return f"<function {obj.qualified_name}({', '.join(obj.params)})>"

    def _pformat_bound_method(self, obj, level):
        return f"<method {obj.function.qualified_name} of {obj.instance.klass.name} instance>"

    def _pformat_builtin(self, obj, level):
        name = getattr(obj, '__name__', None) or 'builtin'
        return f"<builtin {name.lstrip('_')}>"

    # --- Expressions ---

    def _pformat_literal(self, obj, level):
        return self.pformat(obj.value, level)

    def _pformat_list_literal(self, obj, level):
        return "[" + ", ".join(self.pformat(item, level) for item in obj.items) + "]"

    def _pformat_dict_literal(self, obj, level):
        if not obj.entries:
            return "{}"
        entries = [f"{self._pformat_str(key, level)}: {self.pformat(expr, level)}" for key, expr in obj.entries]
        return "{" + ", ".join(entries) + "}"

    def _pformat_ident(self, obj, level):
        return obj.name

    def _pformat_self(self, obj, level):
        return "self"

    def _pformat_path(self, obj, level):
        root = self._wrap_operand(obj.root, _UNARY_PRECEDENCE + 1, level)
        return root + "".join(self.pformat(seg, level) for seg in obj.segments)

    def _pformat_member(self, obj, level):
        return f".{obj.name}"

    def _pformat_index(self, obj, level):
        return f"[{self.pformat(obj.expr, level)}]"

    def _pformat_call(self, obj, level):
        callee = self._wrap_operand(obj.callee, _UNARY_PRECEDENCE + 1, level)
        return f"{callee}({', '.join(self.pformat(a, level) for a in obj.args)})"

    def _pformat_new(self, obj, level):
        return f"new {obj.class_name}({', '.join(self.pformat(a, level) for a in obj.args)})"

    def _pformat_binary(self, obj, level):
        prec = _PRECEDENCE.get(obj.op, 0)
        # Left-associative: an equal-precedence right operand needs parentheses.
        left = self._wrap_operand(obj.left, prec, level)
        right = self._wrap_operand(obj.right, prec + 1, level)
        return f"{left} {obj.op} {right}"

    def _pformat_unary(self, obj, level):
        operand = self._wrap_operand(obj.operand, _UNARY_PRECEDENCE, level)
        return f"{obj.op}{operand}"

    def _wrap_operand(self, node, min_prec, level):
        text = self.pformat(node, level)
        if isinstance(node, BinaryOp) and _PRECEDENCE.get(node.op, 0) < min_prec:
            return f"({text})"
        if isinstance(node, UnaryOp) and _UNARY_PRECEDENCE < min_prec:
            return f"({text})"
        return text
