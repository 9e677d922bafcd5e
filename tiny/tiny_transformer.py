"""
Transforms the raw parser tree into a semantic AST using tiny_datatypes.

The parser (an external collaborator) emits nested mappings of the form
`{'tag': ..., 'children': [...], 'text': ..., 'line': ..., 'col': ...}`.
This module is the only place that knows that shape.
"""

from tiny.tiny_datatypes import (
    ProgramError,
    Program, ClassDecl, FieldDecl, FunctionDecl,
    Let, Assign, ExprStmt, Assert, Print, If, While, ForIn, ForRange, Return,
    Literal, ListLiteral, DictLiteral, Ident, SelfRef,
    Member, Index, GetPath, SetPath, Call, New, BinaryOp, UnaryOp,
)

BINARY_OPERATORS = frozenset({'+', '-', '*', '/', '^', '==', '!=', '<', '<=', '>', '>=', '&&', '||'})
UNARY_OPERATORS = frozenset({'!', '-'})

STATEMENT_TAGS = frozenset({'let', 'assign', 'expr', 'assert', 'print', 'if', 'while', 'for-in', 'for-range', 'return'})


class TinyTransformer:
    def _loc(self, node):
        line = node.get('line'); col = node.get('col')
        if line is None and col is None:
            return None
        return {'line': line, 'col': col, 'tag': node.get('tag'), 'text': node.get('text')}

    def _attach_loc(self, obj, node):
        loc = self._loc(node)
        if loc is not None:
            obj.loc = loc
        return obj

    def _fail(self, message, node):
        loc = self._loc(node) if isinstance(node, dict) else None
        return ProgramError(message, loc)

    def _children(self, node, count=None, at_least=None):
        children = node.get('children', [])
        if not isinstance(children, list):
            raise self._fail(f"'{node.get('tag')}' children must be a list", node)
        if count is not None and len(children) != count:
            raise self._fail(f"'{node.get('tag')}' expects {count} child node(s), got {len(children)}", node)
        if at_least is not None and len(children) < at_least:
            raise self._fail(f"'{node.get('tag')}' expects at least {at_least} child node(s), got {len(children)}", node)
        return children

    def _text(self, node):
        text = node.get('text')
        if not isinstance(text, str) or not text:
            raise self._fail(f"'{node.get('tag')}' node requires a non-empty 'text'", node)
        return text

    def transform(self, node: object) -> object:
        """Transform a program, statement or expression node."""
        # Lists: transform each item
        if isinstance(node, list):
            return [self.transform(n) for n in node]

        if not isinstance(node, dict) or 'tag' not in node:
            raise self._fail(f"Expected a tagged node, got {type(node).__name__}", node)

        tag = node['tag']
        match tag:
            case 'program':
                return self._program(node)
            case 'class':
                return self._class(node)
            case 'function':
                return self._function(node)
            case _ if tag in STATEMENT_TAGS:
                return self.statement(node)
            case _:
                return self.expression(node)

    # --- Declarations ---

    def _program(self, node):
        classes, functions = [], []
        for child in self._children(node):
            match child.get('tag') if isinstance(child, dict) else None:
                case 'class':
                    classes.append(self._class(child))
                case 'function':
                    functions.append(self._function(child))
                case other:
                    raise self._fail(f"Unexpected top-level node {other!r}; expected 'class' or 'function'", child)
        source = node.get('source')
        return self._attach_loc(Program(classes, functions, source if isinstance(source, str) else None), node)

    def _class(self, node):
        fields, methods = [], []
        for child in self._children(node):
            match child.get('tag') if isinstance(child, dict) else None:
                case 'function':
                    methods.append(self._function(child))
                case 'field':
                    init = self._children(child, count=1)[0]
                    fields.append(self._attach_loc(FieldDecl(self._text(child), self.expression(init)), child))
                case other:
                    raise self._fail(f"Unexpected class member {other!r}; expected 'function' or 'field'", child)
        return self._attach_loc(ClassDecl(self._text(node), fields, methods), node)

    def _function(self, node):
        params = []
        for p in node.get('params') or []:
            if isinstance(p, dict):
                p = p.get('text')
            if not isinstance(p, str) or not p:
                raise self._fail("Function parameters must be names", node)
            params.append(p)
        body = self.block(self._children(node))
        return self._attach_loc(FunctionDecl(self._text(node), params, body), node)

    # --- Statements ---

    def block(self, nodes):
        return [self.statement(n) for n in nodes]

    def _block_node(self, node):
        if not isinstance(node, dict) or node.get('tag') != 'block':
            raise self._fail("Expected a 'block' node", node)
        return self.block(self._children(node))

    def statement(self, node):
        if not isinstance(node, dict):
            raise self._fail(f"Expected a statement node, got {type(node).__name__}", node)
        tag = node.get('tag')
        match tag:
            case 'let':
                init = self._children(node, count=1)[0]
                stmt = Let(self._text(node), self.expression(init))
            case 'assign':
                target, value = self._children(node, count=2)
                stmt = Assign(self._target(target), self.expression(value))
            case 'expr':
                stmt = ExprStmt(self.expression(self._children(node, count=1)[0]))
            case 'assert':
                expr = self.expression(self._children(node, count=1)[0])
                source = node.get('source')
                stmt = Assert(expr, source if isinstance(source, str) else None)
            case 'print':
                stmt = Print(self.expression(self._children(node, count=1)[0]))
            case 'if':
                children = self._children(node, at_least=2)
                if len(children) > 3:
                    raise self._fail("'if' expects a condition, a block and an optional else block", node)
                else_body = self._block_node(children[2]) if len(children) == 3 else None
                stmt = If(self.expression(children[0]), self._block_node(children[1]), else_body)
            case 'while':
                cond, body = self._children(node, count=2)
                stmt = While(self.expression(cond), self._block_node(body))
            case 'for-in':
                iterable, body = self._children(node, count=2)
                stmt = ForIn(self._text(node), self.expression(iterable), self._block_node(body))
            case 'for-range':
                children = self._children(node, at_least=3)
                if len(children) > 4:
                    raise self._fail("'for-range' expects start, stop, an optional step and a block", node)
                bounds = [self.expression(c) for c in children[:-1]]
                step = bounds[2] if len(bounds) == 3 else None
                stmt = ForRange(self._text(node), bounds[0], bounds[1], step, self._block_node(children[-1]))
            case 'return':
                children = self._children(node)
                if len(children) > 1:
                    raise self._fail("'return' takes at most one expression", node)
                stmt = Return(self.expression(children[0]) if children else None)
            case _:
                raise self._fail(f"No statement transformer for tag {tag!r}", node)
        return self._attach_loc(stmt, node)

    def _target(self, node):
        expr = self.expression(node)
        match expr:
            case Ident():
                return expr
            case GetPath(root=root, segments=segments):
                target = SetPath(root, segments)
                target.loc = expr.loc
                return target
            case _:
                raise self._fail("Assignment target must be a name or a path", node)

    # --- Expressions ---

    def expression(self, node):
        if not isinstance(node, dict):
            raise self._fail(f"Expected an expression node, got {type(node).__name__}", node)
        tag = node.get('tag')
        match tag:
            # Atomics
            case 'number':
                expr = Literal(self._number(node))
            case 'string':
                text = node.get('text', node.get('value'))
                if not isinstance(text, str):
                    raise self._fail("'string' node requires a string 'text'", node)
                expr = Literal(text)
            case 'boolean':
                value = node.get('value', node.get('text'))
                if value in (True, 'true'):
                    expr = Literal(True)
                elif value in (False, 'false'):
                    expr = Literal(False)
                else:
                    raise self._fail(f"Invalid boolean {value!r}", node)
            case 'null':
                expr = Literal(None)

            # Containers
            case 'list':
                expr = ListLiteral([self.expression(c) for c in self._children(node)])
            case 'dict':
                entries = []
                for entry in self._children(node):
                    if not isinstance(entry, dict) or entry.get('tag') != 'entry':
                        raise self._fail("'dict' children must be 'entry' nodes", entry)
                    value = self._children(entry, count=1)[0]
                    key = entry.get('text')
                    if not isinstance(key, str):
                        raise self._fail("Dict keys must be strings", entry)
                    entries.append((key, self.expression(value)))
                expr = DictLiteral(entries)

            # Names
            case 'name':
                expr = Ident(self._text(node))
            case 'self':
                expr = SelfRef()
            case 'group':
                return self.expression(self._children(node, count=1)[0])

            # Paths and calls
            case 'path':
                children = self._children(node, at_least=2)
                root = self.expression(children[0])
                expr = GetPath(root, [self._segment(s) for s in children[1:]])
            case 'call':
                children = self._children(node, at_least=1)
                expr = Call(self.expression(children[0]), [self.expression(a) for a in children[1:]])
            case 'new':
                expr = New(self._text(node), [self.expression(a) for a in self._children(node)])

            # Operators
            case 'binary':
                op = node.get('text')
                if op not in BINARY_OPERATORS:
                    raise self._fail(f"Unknown binary operator {op!r}", node)
                left, right = self._children(node, count=2)
                expr = BinaryOp(op, self.expression(left), self.expression(right))
            case 'unary':
                op = node.get('text')
                if op not in UNARY_OPERATORS:
                    raise self._fail(f"Unknown unary operator {op!r}", node)
                expr = UnaryOp(op, self.expression(self._children(node, count=1)[0]))
            case _:
                raise self._fail(f"No transformer for tag {tag!r}", node)
        return self._attach_loc(expr, node)

    def _segment(self, node):
        if not isinstance(node, dict):
            raise self._fail("Path segments must be 'member' or 'index' nodes", node)
        match node.get('tag'):
            case 'member':
                seg = Member(self._text(node))
            case 'index':
                seg = Index(self.expression(self._children(node, count=1)[0]))
            case other:
                raise self._fail(f"Unknown path segment {other!r}", node)
        return self._attach_loc(seg, node)

    def _number(self, node):
        value = node.get('value')
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return value
        txt = node.get('text')
        if not isinstance(txt, str):
            raise self._fail("'number' node requires a 'text' or numeric 'value'", node)
        # Integers (no '.' or exponent) stay exact Python ints.
        try:
            if '.' not in txt and 'e' not in txt.lower():
                return int(txt)
            return float(txt)
        except ValueError:
            raise self._fail(f"Invalid number literal {txt!r}", node) from None
