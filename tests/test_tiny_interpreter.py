import pytest

from tiny.tiny_interpreter import Evaluator, PathResolver, ReturnSignal, is_return, unwrap_return
from tiny.tiny_datatypes import (
    Program, ClassDecl, FieldDecl, FunctionDecl,
    Let, Assign, ExprStmt, Assert, Print, If, While, ForIn, ForRange, Return,
    Literal, ListLiteral, DictLiteral, Ident, SelfRef, Member, Index,
    GetPath, SetPath, Call, New, BinaryOp, UnaryOp,
    TinyDict, TinyList, TinyInstance, BoundMethod, Scope,
    AssertionFailure, UnboundNameError, KeyNotFoundError, IndexOutOfRange, MemberNotFoundError,
    ArityError, RedefinitionError, StackOverflow, TinyTypeError, DivisionByZero, ProgramError,
)


# --- AST shorthands ---

def lit(v):
    return Literal(v)

def name(n):
    return Ident(n)

def path(root, *keys):
    root = name(root) if isinstance(root, str) else root
    segs = [Member(k) if isinstance(k, str) else Index(k) for k in keys]
    return GetPath(root, segs)

def set_path(root, *keys):
    get = path(root, *keys)
    return SetPath(get.root, get.segments)

def call(callee, *args):
    callee = name(callee) if isinstance(callee, str) else callee
    return Call(callee, list(args))

def binop(op, left, right):
    return BinaryOp(op, left, right)

def dict_lit(**entries):
    return DictLiteral(list(entries.items()))

def fn(fname, params, *body):
    return FunctionDecl(fname, list(params), list(body))

def klass(cname, *methods, fields=()):
    return ClassDecl(cname, list(fields), list(methods))


@pytest.fixture
def evaluator():
    """Returns a new Evaluator for each test."""
    return Evaluator(max_call_depth=64)


def run_main(evaluator, *body, classes=(), functions=()):
    """Loads `Test.main` (plus extra declarations) and runs it."""
    test = klass('Test', fn('main', [], *body))
    evaluator.load(Program([test, *classes], list(functions)))
    return evaluator.call(evaluator.resolve_entry('Test.main'), [])


# --- Return signals ---

def test_return_signal_helpers():
    sig = ReturnSignal(5)
    assert is_return(sig)
    assert unwrap_return(sig) == 5
    assert unwrap_return(7) == 7
    assert not is_return(None)


# --- Chained path access ---

NESTED = dict_lit(a=dict_lit(b=dict_lit(c=dict_lit(x=lit(1)))))


def test_path_read_through_nested_dicts(evaluator):
    result = run_main(evaluator,
        Let('d', NESTED),
        Return(path('d', 'a', 'b', 'c', 'x')),
    )
    assert result == 1


def test_path_write_then_read_round_trip(evaluator):
    result = run_main(evaluator,
        Let('d', NESTED),
        Assign(set_path('d', 'a', 'b', 'c', 'x'), dict_lit(name=lit("tiny"))),
        Return(path('d', 'a', 'b', 'c', 'x', 'name')),
    )
    assert result == "tiny"


def test_mutation_is_visible_through_alias(evaluator):
    result = run_main(evaluator,
        Let('d', NESTED),
        Let('r', path('d', 'a')),
        Assign(set_path('d', 'a', 'b', 'x'), lit(1)),
        Return(path('r', 'b', 'x')),
    )
    assert result == 1


def test_write_creates_or_overwrites_final_key(evaluator):
    result = run_main(evaluator,
        Let('d', dict_lit(k=lit(1))),
        Assign(set_path('d', 'k'), lit(2)),
        Assign(set_path('d', 'new'), lit(3)),
        Return(name('d')),
    )
    assert dict(result) == {'k': 2, 'new': 3}


def test_missing_intermediate_segment_on_write_fails_without_change(evaluator):
    evaluator.load(Program([]))
    scope = Scope(parent=evaluator.global_scope)
    d = TinyDict({'a': TinyDict()})
    scope.define('d', d)
    with pytest.raises(KeyNotFoundError) as exc:
        evaluator.execute_block([Assign(set_path('d', 'a', 'b', 'c'), lit(1))], scope)
    assert exc.value.key == 'b'
    assert dict(d['a']) == {}


def test_missing_key_on_read_fails(evaluator):
    with pytest.raises(KeyNotFoundError):
        run_main(evaluator, Let('d', dict_lit()), Return(path('d', 'nope')))


def test_value_is_evaluated_before_target(evaluator):
    # The right-hand side fails first, so the missing target is never reported.
    with pytest.raises(UnboundNameError) as exc:
        run_main(evaluator,
            Let('d', dict_lit()),
            Assign(set_path('d', 'missing', 'x'), name('nope')),
        )
    assert exc.value.name == 'nope'


def test_index_segments_on_dicts_and_lists(evaluator):
    result = run_main(evaluator,
        Let('d', dict_lit(items=ListLiteral([lit(10), lit(20)]))),
        Let('k', lit("items")),
        Assign(set_path('d', name('k'), lit(1)), lit(99)),
        Return(path('d', 'items', lit(1))),
    )
    assert result == 99


def test_list_index_out_of_range(evaluator):
    with pytest.raises(IndexOutOfRange):
        run_main(evaluator, Let('xs', ListLiteral([lit(1)])), Return(path('xs', lit(3))))
    with pytest.raises(IndexOutOfRange):
        run_main(Evaluator(), Let('xs', ListLiteral([lit(1)])), Return(path('xs', lit(-1))))


def test_list_member_and_non_container_access_are_type_mismatches(evaluator):
    with pytest.raises(TinyTypeError):
        run_main(evaluator, Let('xs', ListLiteral([])), Return(path('xs', 'length')))
    with pytest.raises(TinyTypeError):
        run_main(Evaluator(), Let('n', lit(5)), Return(path('n', 'x')))
    with pytest.raises(TinyTypeError):
        run_main(Evaluator(), Let('d', dict_lit()), Return(path('d', lit(1))))


def test_path_resolver_get_and_set_directly(evaluator):
    resolver = PathResolver(evaluator)
    scope = Scope()
    scope.define('cfg', TinyDict({'db': TinyDict({'port': 1})}))
    assert resolver.get(path('cfg', 'db', 'port'), scope) == 1
    assert resolver.set(set_path('cfg', 'db', 'port'), 2, scope) == 2
    assert scope.get('cfg')['db']['port'] == 2


# --- Instances and classes ---

POINT = klass('Point',
    fn('init', ['x', 'y'],
        Assign(SetPath(SelfRef(), [Member('x')]), name('x')),
        Assign(SetPath(SelfRef(), [Member('y')]), name('y')),
    ),
    fn('sum', [], Return(binop('+', GetPath(SelfRef(), [Member('x')]), GetPath(SelfRef(), [Member('y')])))),
    fn('origin', [], Return(lit(0))),
    fields=[FieldDecl('label', lit("p"))],
)


def test_new_runs_field_initializers_and_init(evaluator):
    p = run_main(evaluator, Return(New('Point', [lit(1), lit(2)])), classes=[POINT])
    assert isinstance(p, TinyInstance)
    assert dict(p.fields) == {'label': "p", 'x': 1, 'y': 2}


def test_field_initializer_bare_call_uses_constructed_class(evaluator):
    widget = klass('Widget',
        fn('size', [], Return(lit(7))),
        fields=[FieldDecl('w', call('size'))],
    )
    caller = fn('size', [], Return(lit(1)))
    test = klass('Test', caller, fn('main', [], Return(New('Widget', []))))
    evaluator.load(Program([test, widget]))
    w = evaluator.call(evaluator.resolve_entry('Test.main'), [])
    assert w.fields['w'] == 7
    assert evaluator.call_stack == []


def test_field_initializer_errors_carry_construction_frame(evaluator):
    broken = klass('Broken', fields=[FieldDecl('f', path('nowhere', 'x'))])
    with pytest.raises(UnboundNameError) as exc:
        run_main(evaluator, Return(New('Broken', [])), classes=[broken])
    assert [f['name'] for f in exc.value.frames] == ['Test.main', 'new Broken']


def test_new_without_init_rejects_arguments(evaluator):
    with pytest.raises(ArityError):
        run_main(evaluator, Return(New('Empty', [lit(1)])), classes=[klass('Empty')])


def test_new_with_unknown_class_fails(evaluator):
    with pytest.raises(UnboundNameError):
        run_main(evaluator, Return(New('Ghost', [])))


def test_instance_member_read_yields_field_or_bound_method(evaluator):
    m = run_main(evaluator,
        Let('p', New('Point', [lit(1), lit(2)])),
        Return(path('p', 'sum')),
        classes=[POINT],
    )
    assert isinstance(m, BoundMethod)
    assert m.function.name == 'sum'


def test_instance_missing_member_fails(evaluator):
    with pytest.raises(MemberNotFoundError):
        run_main(evaluator, Let('p', New('Point', [lit(1), lit(2)])), Return(path('p', 'z')), classes=[POINT])


def test_class_is_immutable(evaluator):
    with pytest.raises(TinyTypeError):
        run_main(evaluator, Assign(set_path('Point', 'origin'), lit(1)), classes=[POINT])


# --- Call dispatch ---

def test_instance_call_binds_self(evaluator):
    result = run_main(evaluator,
        Let('p', New('Point', [lit(3), lit(4)])),
        Return(call(path('p', 'sum'))),
        classes=[POINT],
    )
    assert result == 7


def test_class_qualified_call_without_self(evaluator):
    assert run_main(evaluator, Return(call(path('Point', 'origin'))), classes=[POINT]) == 0


def test_class_qualified_call_referencing_self_fails(evaluator):
    with pytest.raises(UnboundNameError) as exc:
        run_main(evaluator, Return(call(path('Point', 'sum'))), classes=[POINT])
    assert exc.value.name == 'self'


COUNTER = klass('Counter',
    fn('double', ['n'], Return(binop('*', name('n'), lit(2)))),
    fn('quad', ['n'], Return(call('double', call('double', name('n'))))),
    fn('whoami', [], Return(SelfRef())),
    fn('me', [], Return(call('whoami'))),
)


def test_bare_sibling_call_inside_method_without_instance(evaluator):
    assert run_main(evaluator, Return(call(path('Counter', 'quad'), lit(3))), classes=[COUNTER]) == 12


def test_bare_sibling_call_carries_self(evaluator):
    result = run_main(evaluator,
        Let('c', New('Counter', [])),
        Return(BinaryOp('==', call(path('c', 'me')), name('c'))),
        classes=[COUNTER],
    )
    assert result is True


def test_bare_call_falls_back_to_free_function(evaluator):
    helper = fn('helper', ['x'], Return(binop('+', name('x'), lit(1))))
    user = klass('User', fn('run', [], Return(call('helper', lit(41)))))
    assert run_main(evaluator, Return(call(path('User', 'run'))), classes=[user], functions=[helper]) == 42


def test_callable_field_wins_over_method(evaluator):
    shout = fn('shout', [], Return(lit("field")))
    speaker = klass('Speaker', fn('speak', [], Return(lit("method"))))
    result = run_main(evaluator,
        Let('s', New('Speaker', [])),
        Assign(set_path('s', 'speak'), name('shout')),
        Return(call(path('s', 'speak'))),
        classes=[speaker], functions=[shout],
    )
    assert result == "field"


def test_dict_entry_holding_a_function_is_callable(evaluator):
    inc = fn('inc', ['x'], Return(binop('+', name('x'), lit(1))))
    result = run_main(evaluator,
        Let('ops', dict_lit(inc=name('inc'))),
        Return(call(path('ops', 'inc'), lit(1))),
        functions=[inc],
    )
    assert result == 2


def test_calling_a_non_callable_fails(evaluator):
    with pytest.raises(TinyTypeError):
        run_main(evaluator, Let('x', lit(1)), Return(call('x')))


def test_calling_a_class_directly_fails(evaluator):
    with pytest.raises(TinyTypeError):
        run_main(evaluator, Return(call('Point', lit(1), lit(2))), classes=[POINT])


def test_arity_mismatch_fails_before_body_runs(evaluator):
    body_effect = Print(lit("ran"))
    f = fn('one', ['a'], body_effect, Return(name('a')))
    with pytest.raises(ArityError) as exc:
        run_main(evaluator, Return(call('one', lit(1), lit(2))), functions=[f])
    assert exc.value.expected == 1
    assert exc.value.got == 2
    assert evaluator.side_effects == []


def test_builtin_arity_is_checked(evaluator):
    with pytest.raises(ArityError):
        run_main(evaluator, Return(call('len')))


def test_builtins_len_push_keys(evaluator):
    result = run_main(evaluator,
        Let('xs', ListLiteral([])),
        ExprStmt(call('push', name('xs'), lit(1))),
        ExprStmt(call('push', name('xs'), lit(2))),
        Let('d', dict_lit(a=lit(1), b=lit(2))),
        Return(ListLiteral([call('len', name('xs')), call('keys', name('d')), call('len', lit("abc"))])),
    )
    assert result[0] == 2
    assert list(result[1]) == ['a', 'b']
    assert result[2] == 3


def test_function_without_return_yields_null(evaluator):
    assert run_main(evaluator, ExprStmt(lit(1))) is None


def test_call_scope_does_not_see_caller_locals(evaluator):
    peek = fn('peek', [], Return(name('secret')))
    with pytest.raises(UnboundNameError):
        run_main(evaluator, Let('secret', lit(1)), Return(call('peek')), functions=[peek])


def test_recursion_fibonacci(evaluator):
    fib = fn('fib', ['n'],
        Assert(binop('<=', name('n'), lit(55))),
        If(binop('<=', name('n'), lit(1)), [Return(name('n'))]),
        Return(binop('+', call('fib', binop('-', name('n'), lit(1))), call('fib', binop('-', name('n'), lit(2))))),
    )
    results = run_main(evaluator,
        Return(ListLiteral([call(path('Fib', 'fib'), lit(n)) for n in (0, 1, 10, 15)])),
        classes=[klass('Fib', fib)],
    )
    assert list(results) == [0, 1, 55, 610]


def test_guard_assert_fails_before_recursing(evaluator):
    fib = fn('fib', ['n'],
        Assert(binop('<=', name('n'), lit(55))),
        Return(call('fib', binop('-', name('n'), lit(1)))),
    )
    with pytest.raises(AssertionFailure) as exc:
        run_main(evaluator, Return(call(path('Fib', 'fib'), lit(56))), classes=[klass('Fib', fib)])
    assert [f['name'] for f in exc.value.frames] == ['Test.main', 'Fib.fib']
    assert exc.value.frames[-1]['args'] == [56]


def test_stack_overflow_at_configured_depth():
    ev = Evaluator(max_call_depth=20)
    loop = fn('loop', ['n'], Return(call('loop', binop('+', name('n'), lit(1)))))
    with pytest.raises(StackOverflow) as exc:
        run_main(ev, Return(call('loop', lit(0))), functions=[loop])
    assert exc.value.depth == 20
    assert len(exc.value.frames) == 20
    assert ev.call_stack == []


def test_max_call_depth_from_environment(monkeypatch):
    monkeypatch.setenv("TINY_MAX_CALL_DEPTH", "12")
    assert Evaluator().max_call_depth == 12
    monkeypatch.setenv("TINY_MAX_CALL_DEPTH", "lots")
    with pytest.raises(ValueError):
        Evaluator()


# --- Statements and scoping ---

def test_let_twice_in_one_scope_fails(evaluator):
    with pytest.raises(RedefinitionError):
        run_main(evaluator, Let('x', lit(1)), Let('x', lit(2)))


def test_assignment_to_unbound_name_fails(evaluator):
    with pytest.raises(UnboundNameError):
        run_main(evaluator, Assign(name('x'), lit(1)))


def test_block_scopes_allow_let_in_loop_bodies(evaluator):
    result = run_main(evaluator,
        Let('i', lit(0)),
        Let('total', lit(0)),
        While(binop('<', name('i'), lit(3)), [
            Let('step', lit(2)),
            Assign(name('total'), binop('+', name('total'), name('step'))),
            Assign(name('i'), binop('+', name('i'), lit(1))),
        ]),
        Return(name('total')),
    )
    assert result == 6


def test_if_else_and_truthiness_of_zero(evaluator):
    result = run_main(evaluator,
        If(lit(0), [Return(lit("zero is truthy"))], [Return(lit("zero is falsy"))]),
    )
    assert result == "zero is truthy"
    assert run_main(Evaluator(), If(lit(None), [Return(lit(1))], [Return(lit(2))])) == 2


def test_for_in_over_list_and_dict_keys(evaluator):
    result = run_main(evaluator,
        Let('out', ListLiteral([])),
        ForIn('x', ListLiteral([lit(1), lit(2)]), [ExprStmt(call('push', name('out'), name('x')))]),
        ForIn('k', dict_lit(a=lit(1), b=lit(2)), [ExprStmt(call('push', name('out'), name('k')))]),
        Return(name('out')),
    )
    assert list(result) == [1, 2, 'a', 'b']


def test_for_in_over_non_container_fails(evaluator):
    with pytest.raises(TinyTypeError):
        run_main(evaluator, ForIn('x', lit(3), []))


def test_for_range_is_inclusive_and_supports_negative_step(evaluator):
    result = run_main(evaluator,
        Let('out', ListLiteral([])),
        ForRange('i', lit(1), lit(3), None, [ExprStmt(call('push', name('out'), name('i')))]),
        ForRange('i', lit(6), lit(2), lit(-2), [ExprStmt(call('push', name('out'), name('i')))]),
        Return(name('out')),
    )
    assert list(result) == [1, 2, 3, 6, 4, 2]


def test_for_range_zero_step_fails(evaluator):
    with pytest.raises(TinyTypeError):
        run_main(evaluator, ForRange('i', lit(1), lit(3), lit(0), []))


def test_return_inside_loop_leaves_function(evaluator):
    result = run_main(evaluator,
        ForRange('i', lit(1), lit(10), None, [
            If(binop('==', name('i'), lit(4)), [Return(name('i'))]),
        ]),
        Return(lit(-1)),
    )
    assert result == 4


def test_print_records_stdout_side_effect(evaluator):
    run_main(evaluator, Print(lit("hello")), Print(ListLiteral([lit(1), lit("a")])))
    assert evaluator.side_effects == [
        {'topics': ['stdout'], 'message': 'hello'},
        {'topics': ['stdout'], 'message': '[1, "a"]'},
    ]


# --- Operators ---

@pytest.mark.parametrize("op, left, right, expected", [
    ('+', 2, 3, 5),
    ('-', 2, 3, -1),
    ('*', 4, 3, 12),
    ('/', 6, 3, 2),
    ('/', 7, 2, 3.5),
    ('^', 2, 10, 1024),
    ('^', 2, -1, 0.5),
    ('+', "a", 1, "a1"),
    ('+', 2.5, "x", "2.5x"),
    ('+', "is ", True, "is true"),
    ('<', "a", "b", True),
    ('>=', 2, 2.0, True),
    ('==', 1, 1.0, True),
    ('==', True, 1, False),
    ('!=', "a", None, True),
])
def test_binary_operators(evaluator, op, left, right, expected):
    result = run_main(evaluator, Return(binop(op, lit(left), lit(right))))
    assert result == expected
    assert type(result) is type(expected)


def test_integer_arithmetic_stays_exact(evaluator):
    assert run_main(evaluator, Return(binop('^', lit(3), lit(40)))) == 3 ** 40


def test_division_by_zero(evaluator):
    with pytest.raises(DivisionByZero) as exc:
        run_main(evaluator, Return(binop('/', lit(1), lit(0))))
    assert exc.value.kind == "DivisionByZero"


@pytest.mark.parametrize("op, right", [
    ('+', 0.5),
    ('-', 0.5),
    ('*', 0.5),
    ('/', 3),
])
def test_mixed_arithmetic_out_of_float_range(evaluator, op, right):
    huge = binop('^', lit(10), lit(400))
    with pytest.raises(TinyTypeError) as exc:
        run_main(evaluator, Return(binop(op, huge, lit(right))))
    assert exc.value.kind == "TypeMismatch"
    assert exc.value.message == f"result of '{op}' is out of range"


def test_exact_integer_division_of_huge_values(evaluator):
    huge = binop('^', lit(10), lit(400))
    assert run_main(evaluator, Return(binop('/', huge, lit(5)))) == 2 * 10 ** 399


@pytest.mark.parametrize("op, left, right", [
    ('-', "a", 1),
    ('*', "a", 2),
    ('<', 1, "a"),
    ('+', True, 1),
    ('+', None, 1),
])
def test_operator_type_mismatch(evaluator, op, left, right):
    with pytest.raises(TinyTypeError):
        run_main(evaluator, Return(binop(op, lit(left), lit(right))))


def test_list_concatenation_builds_new_list(evaluator):
    result = run_main(evaluator,
        Let('a', ListLiteral([lit(1)])),
        Let('b', binop('+', name('a'), ListLiteral([lit(2)]))),
        Return(ListLiteral([name('a'), name('b')])),
    )
    a, b = result
    assert list(a) == [1]
    assert list(b) == [1, 2]


def test_logical_operators_short_circuit(evaluator):
    # The right operands would fail if evaluated.
    result = run_main(evaluator,
        Return(ListLiteral([
            binop('&&', lit(False), name('boom')),
            binop('||', lit(0), name('boom')),
            UnaryOp('!', lit(None)),
            UnaryOp('-', lit(5)),
        ])),
    )
    assert list(result) == [False, True, True, -5]


def test_container_equality_is_identity(evaluator):
    result = run_main(evaluator,
        Let('a', dict_lit()),
        Let('b', name('a')),
        Return(ListLiteral([binop('==', name('a'), name('b')), binop('==', name('a'), dict_lit())])),
    )
    assert list(result) == [True, False]


# --- Assertions ---

def test_assert_true_is_a_no_op(evaluator):
    assert run_main(evaluator, Assert(lit(True)), Return(lit("after"))) == "after"


def test_assert_false_stops_execution(evaluator):
    with pytest.raises(AssertionFailure) as exc:
        run_main(evaluator, Assert(lit(False)), Print(lit("unreachable")))
    assert exc.value.detail == {'expression': 'false', 'value': 'false'}
    assert evaluator.side_effects == []


def test_assert_reports_comparison_operands(evaluator):
    node = Assert(binop('==', binop('+', name('x'), lit(1)), lit(3)))
    node.loc = {'line': 7, 'col': 5, 'tag': 'assert', 'text': None}
    with pytest.raises(AssertionFailure) as exc:
        run_main(evaluator, Let('x', lit(1)), node)
    err = exc.value
    assert err.message == "assert x + 1 == 3 failed (left: 2, right: 3)"
    assert err.loc['line'] == 7
    assert err.frames[0]['name'] == 'Test.main'


def test_assert_prefers_parser_source_text(evaluator):
    with pytest.raises(AssertionFailure) as exc:
        run_main(evaluator, Assert(lit(None), source="nothing_here"))
    assert exc.value.message == "assert nothing_here failed (value: null)"


# --- Loading ---

def test_duplicate_declarations_fail_to_load(evaluator):
    with pytest.raises(RedefinitionError):
        evaluator.load(Program([klass('A'), klass('A')]))
    with pytest.raises(RedefinitionError):
        Evaluator().load(Program([klass('B', fn('m', []), fn('m', []))]))
    with pytest.raises(RedefinitionError):
        Evaluator().load(Program([klass('C', fields=[FieldDecl('f', lit(1)), FieldDecl('f', lit(2))])]))


def test_method_parameter_named_self_fails_to_load(evaluator):
    with pytest.raises(ProgramError) as exc:
        evaluator.load(Program([klass('P', fn('set', ['self', 'v']))]))
    assert exc.value.message == "method P.set cannot take a parameter named 'self'"


def test_resolve_entry(evaluator):
    evaluator.load(Program([klass('Test', fn('main', []))], [fn('start', [])]))
    assert evaluator.resolve_entry('Test.main').qualified_name == 'Test.main'
    assert evaluator.resolve_entry('start').name == 'start'
    for bad in ('Nope.main', 'Test.nope', 'nope', 'len'):
        with pytest.raises(ProgramError):
            evaluator.resolve_entry(bad)
