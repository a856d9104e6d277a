"""Binary operator lowering."""

import pytest
from llvmlite import ir

from chiselc import apply_binary, TypeMismatchError

I32 = ir.IntType(32)
F32 = ir.FloatType()


def _make_builder(*arg_types):
    func = ir.Function(ir.Module(), ir.FunctionType(ir.VoidType(), list(arg_types)), name="f")
    return ir.IRBuilder(func.append_basic_block("entry")), func.args


@pytest.mark.parametrize("op,int_op,float_op", [
    ("PLUS", "add", "fadd"),
    ("MINUS", "sub", "fsub"),
    ("TIMES", "mul", "fmul"),
    ("DIVIDE", "sdiv", "fdiv"),
    ("MOD", "srem", "frem"),
])
def test_arithmetic_picks_variant_by_operand_type(op, int_op, float_op):
    builder, (a, b, x, y) = _make_builder(I32, I32, F32, F32)
    ival = apply_binary(builder, op, a, b)
    fval = apply_binary(builder, op, x, y)
    assert ival.opname == int_op and ival.type == I32
    assert fval.opname == float_op and fval.type == F32


@pytest.mark.parametrize("op", ["EQ", "NE", "LT", "GT", "LE", "GE"])
def test_comparisons_yield_bool(op):
    builder, (a, b, x, y) = _make_builder(I32, I32, F32, F32)
    icmp = apply_binary(builder, op, a, b)
    fcmp = apply_binary(builder, op, x, y)
    assert icmp.type == ir.IntType(1)
    assert fcmp.type == ir.IntType(1)
    assert icmp.opname == "icmp"
    # float comparisons are unordered
    assert fcmp.opname == "fcmp"
    assert fcmp.op.startswith("u")


def test_logical_ops_are_bitwise_on_integers():
    builder, (a, b) = _make_builder(I32, I32)
    assert apply_binary(builder, "ANDAND", a, b).opname == "and"
    assert apply_binary(builder, "OROR", a, b).opname == "or"


def test_logical_ops_reject_floats():
    builder, (x, y) = _make_builder(F32, F32)
    with pytest.raises(TypeMismatchError):
        apply_binary(builder, "ANDAND", x, y)


@pytest.mark.parametrize("op", ["PLUS", "DIVIDE", "LT", "EQ", "OROR"])
def test_mismatched_operands_emit_nothing(op):
    builder, (a, x) = _make_builder(I32, F32)
    with pytest.raises(TypeMismatchError) as exc:
        apply_binary(builder, op, a, x, 3)
    assert "i32" in exc.value.msg and "f32" in exc.value.msg
    assert exc.value.pos == 3
    assert builder.block.instructions == []


def test_pointer_operands_are_rejected():
    ptr = I32.as_pointer()
    builder, (p, q) = _make_builder(ptr, ptr)
    with pytest.raises(TypeMismatchError):
        apply_binary(builder, "PLUS", p, q)
