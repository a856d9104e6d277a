"""Front end: tokens and syntax trees."""

import pytest

from chiselc import (
    Source, parse_source, Ty, PRIMS,
    RootNode, BlockNode, FunctionDeclNode, FunctionDefNode, VariableDeclarationNode,
    AssignmentNode, MultiAssignmentNode, TargetListNode, ListNode, BinaryExprNode,
    CastOpNode, CondExprNode, CondStatementNode, ArrayAccessNode, DereferenceNode,
    AddressOfNode, FunctionCallNode, VariableNode, I32Node, F32Node, CharNode, BoolNode,
    ParseError, InvalidTypeError,
)


def _parse(text: str) -> RootNode:
    return parse_source(Source.from_text(text))


def _body(text: str):
    """Items of the single function body in `text`."""
    root = _parse(text)
    assert len(root.items) == 1
    return root.items[0].body.body.items


def test_empty_program():
    assert _parse("// nothing here\n").items == ()


def test_signatures():
    decl, defn = _parse("""
        fn f(a: i32, b: f32[3]*) -> char;
        fn g() { }
    """).items
    assert isinstance(decl, FunctionDeclNode)
    assert [p.ty for p in decl.params] == [PRIMS["i32"], Ty("f32", 3, True)]
    assert decl.ret == PRIMS["char"]
    assert isinstance(defn, FunctionDefNode)
    assert defn.decl.ret == PRIMS["void"]
    assert defn.body.is_void


def test_tail_expression_makes_block_valued():
    tail, = _body("fn f() -> i32 { 1 }")
    assert tail == I32Node(1)
    root = _parse("fn f() { 1; }")
    assert root.items[0].body.is_void


def test_literals():
    items = _body("fn f() { 7; -3; 2.5; -0.5; 'z'; '\\n'; true; false; }")
    assert items == (
        I32Node(7), I32Node(-3), F32Node(2.5), F32Node(-0.5),
        CharNode(ord("z")), CharNode(10), BoolNode(True), BoolNode(False),
    )


def test_operator_precedence():
    expr, = _body("fn f() -> i32 { 1 + 2 * 3 < 4 && 5 == 6 }")
    assert expr.op == "ANDAND"
    lt = expr.lhs
    assert lt.op == "LT"
    assert lt.lhs.op == "PLUS"
    assert lt.lhs.rhs.op == "TIMES"
    assert expr.rhs.op == "EQ"


def test_cast_binds_tighter_than_division():
    expr, = _body("fn f() -> f32 { x as f32 / 2.0 }")
    assert isinstance(expr, BinaryExprNode) and expr.op == "DIVIDE"
    assert expr.lhs == CastOpNode(PRIMS["f32"], VariableNode("x"))


def test_places_and_pointers():
    deref, addr, index = _body("fn f() { *p; &xs[1]; xs[i + 1]; }")
    assert deref == DereferenceNode(VariableNode("p"))
    assert addr == AddressOfNode(ArrayAccessNode(VariableNode("xs"), I32Node(1)))
    assert isinstance(index, ArrayAccessNode)
    assert isinstance(index.index, BinaryExprNode)


def test_declarations_and_assignments():
    items = _body("""
        fn f() {
            var a: i32;
            var b: i32[2] = [1, 2];
            a = 3;
            b = [4];
            [a, b[0]] = [5, 6];
        }
    """)
    a, b, assign, multi, targets = items
    assert a == VariableDeclarationNode(PRIMS["i32"], "a", None)
    assert isinstance(b.value, ListNode)
    assert assign == AssignmentNode(VariableNode("a"), I32Node(3))
    assert isinstance(multi, MultiAssignmentNode) and multi.target == VariableNode("b")
    assert isinstance(targets.target, TargetListNode)
    assert len(targets.target.targets) == 2


def test_calls():
    call, = _body("fn f() -> i32 { g(1, h()) }")
    assert isinstance(call, FunctionCallNode)
    assert call.name == "g"
    assert call.args.items[1] == FunctionCallNode("h", ListNode(()))


def test_conditional_forms():
    stmt, tail = _body("""
        fn f(c: i32) -> i32 {
            if (c) { g(); } else if (c > 1) { h(); };
            if (c) { 1 } else { 2 }
        }
    """)
    assert isinstance(stmt, CondStatementNode)
    assert isinstance(stmt.else_, CondExprNode)
    assert isinstance(tail, CondExprNode)
    assert isinstance(tail.then, BlockNode)


def test_positions_point_into_source():
    text = "fn f() -> i32 {\n    var x: i32 = 1;\n    x\n}"
    root = _parse(text)
    decl, tail = root.items[0].body.body.items
    assert decl.pos == text.index("x: i32")
    assert tail.pos == text.rindex("x")


@pytest.mark.parametrize("text", [
    "fn f( -> i32 { }",
    "fn f() -> i32 { 1 = 2; }",
    "fn f() -> i32 { &1 }",
    "fn f() -> i32 { g()[0] }",
    "fn f() -> i32 { 3000000000 }",
    "fn f() -> i32 { $ }",
    "fn f() -> i32 { 'ab' }",
    "fn f() { var x: i32 }",
    "fn f() -> i32 { 1 ",
    "var x: i32;",
])
def test_syntax_errors(text):
    with pytest.raises(ParseError):
        _parse(text)


def test_end_of_file_error_has_position():
    with pytest.raises(ParseError) as exc:
        _parse("fn f() {")
    assert exc.value.pos >= 0


@pytest.mark.parametrize("text", [
    "fn f() { var a: i32[0]; }",
    "fn f() { var a: void*; }",
    "fn f(a: void[2]) { }",
])
def test_invalid_types_are_rejected_with_position(text):
    with pytest.raises(InvalidTypeError) as exc:
        _parse(text)
    assert exc.value.pos > 0
