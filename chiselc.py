#!/usr/bin/env python3
import os, sys
import contextlib
from dataclasses import dataclass, field
from typing import List, Dict, Optional, Tuple, Union

from ply.lex import lex
from ply.yacc import yacc
from llvmlite import ir, binding

MODULE_NAME = "chisel"
SOURCE_SUFFIX = ".chsl"

INT32_MIN = -(2 ** 31)
INT32_MAX = 2 ** 31 - 1

# ============================================================
# Diagnostics
# ============================================================

@dataclass
class Source:
    path: str
    text: str
    lines: List[str]

    @staticmethod
    def from_path(path: str) -> "Source":
        with open(path, "r", encoding="utf-8") as f:
            txt = f.read()
        return Source(path=os.path.abspath(path), text=txt, lines=txt.splitlines())

    @staticmethod
    def from_text(text: str, path: str = "<input>") -> "Source":
        return Source(path=path, text=text, lines=text.splitlines())

    def line_col(self, lexpos: int) -> Tuple[int, int]:
        # compute (line, col) from absolute index
        line = self.text.count("\n", 0, lexpos) + 1
        bol = self.text.rfind("\n", 0, lexpos)
        if bol < 0: bol = -1
        col = lexpos - bol
        return line, col

@dataclass
class Diag:
    kind: str  # always "error"
    msg: str
    src: Source
    lexpos: int  # -1 when the construct has no source position
    hint: Optional[str] = None

    def format(self, use_color: bool = True) -> str:
        if use_color:
            RESET, BOLD, RED, BLUE, CYAN = "\033[0m", "\033[1m", "\033[31m", "\033[34m", "\033[36m"
        else:
            RESET = BOLD = RED = BLUE = CYAN = ""

        header = f"{BOLD}{RED}{self.kind}{RESET}{BOLD}: {self.msg}{RESET}"
        if self.lexpos < 0:
            result = f"{header}\n{BOLD}{BLUE}-->{RESET} {self.src.path}"
            if self.hint:
                result += f"\n{BOLD}{CYAN}help:{RESET} {self.hint}"
            return result

        line, col = self.src.line_col(self.lexpos)
        code = self.src.lines[line - 1] if 1 <= line <= len(self.src.lines) else ""
        location = f"{BOLD}{BLUE}-->{RESET} {self.src.path}:{line}:{col}"

        line_num_width = len(str(line))
        line_prefix = f"{BOLD}{BLUE}{line:>{line_num_width}} |{RESET} "
        empty_prefix = f"{BOLD}{BLUE}{' ' * line_num_width} |{RESET}"

        caret = " " * (col - 1) + f"{BOLD}{RED}^~~~{RESET}"

        result = f"{header}\n{location}\n{empty_prefix}\n{line_prefix}{code}\n{empty_prefix} {caret}"

        if self.hint:
            result += f"\n{empty_prefix}\n{empty_prefix} {BOLD}{CYAN}help:{RESET} {self.hint}"

        return result

class ErrorSink:
    def __init__(self) -> None:
        self.errors: List[Diag] = []

    def error(self, msg: str, src: Source, lexpos: int, hint: Optional[str] = None):
        self.errors.append(Diag("error", msg, src, lexpos, hint))

    def ok(self) -> bool:
        return not self.errors

    def dump(self, use_color: bool = True):
        for e in self.errors:
            print(e.format(use_color=use_color))
            print()

# ============================================================
# Compile errors
# ============================================================

class CompileError(Exception):
    """A failure that aborts the whole compilation run."""

    def __init__(self, msg: str, pos: int = -1, hint: Optional[str] = None):
        super().__init__(msg)
        self.msg = msg
        self.pos = pos
        self.hint = hint

class ParseError(CompileError):
    pass

class NameResolutionError(CompileError):
    pass

class TypeMismatchError(CompileError):
    pass

class InvalidTypeError(CompileError):
    pass

class ArityError(CompileError):
    pass

class ControlFlowError(CompileError):
    pass

class BoundsError(CompileError):
    pass

class DuplicateDefinitionError(CompileError):
    pass

class VerificationError(CompileError):
    pass

# ============================================================
# Types
# ============================================================

PRIM_NAMES = ("void", "bool", "i32", "f32", "char")

@dataclass(frozen=True)
class Ty:
    prim: str
    array_size: Optional[int] = None  # None for scalars
    is_pointer: bool = False

    def __post_init__(self):
        if self.prim not in PRIM_NAMES:
            raise InvalidTypeError(f"unknown primitive type '{self.prim}'")
        if self.array_size is not None and self.array_size < 1:
            raise InvalidTypeError(f"array size must be at least 1, got {self.array_size}")
        if self.prim == "void" and (self.array_size is not None or self.is_pointer):
            raise InvalidTypeError("'void' cannot be used as an array or pointer element type")

    def __str__(self):
        s = self.prim
        if self.array_size is not None:
            s += f"[{self.array_size}]"
        if self.is_pointer:
            s += "*"
        return s

    @property
    def is_void(self) -> bool:
        return self.prim == "void"

    @property
    def is_array(self) -> bool:
        return self.array_size is not None and not self.is_pointer

    @property
    def is_scalar(self) -> bool:
        return self.array_size is None and not self.is_pointer

    @property
    def is_float(self) -> bool:
        return self.is_scalar and self.prim == "f32"

    @property
    def is_integer(self) -> bool:
        # bool is a one-bit unsigned integer
        return self.is_scalar and self.prim in ("bool", "i32", "char")

    def element(self) -> "Ty":
        if not self.is_array:
            raise TypeMismatchError(f"type {self} is not an array")
        return PRIMS[self.prim]

    def pointee(self) -> "Ty":
        if not self.is_pointer:
            raise TypeMismatchError(f"cannot dereference non-pointer type {self}")
        return Ty(self.prim, self.array_size)

    def pointer_to(self) -> "Ty":
        if self.is_pointer:
            raise TypeMismatchError(f"pointers to pointers are not supported ({self}*)")
        return Ty(self.prim, self.array_size, True)

    def require_storable(self, pos: int = -1, what: str = "variable"):
        if self.is_void:
            raise InvalidTypeError(f"{what} cannot have type 'void'", pos,
                                   hint="'void' is only valid as a function return type")

    @staticmethod
    def from_ir(t: ir.Type) -> "Ty":
        """Recover a Ty from a backend type; inverse of ty_to_ir."""
        if isinstance(t, ir.PointerType):
            pointee = getattr(t, "pointee", None)
            if pointee is None:
                raise TypeMismatchError(f"cannot recover the element type of opaque pointer {t}")
            return Ty.from_ir(pointee).pointer_to()
        if isinstance(t, ir.ArrayType):
            elem = Ty.from_ir(t.element)
            if not elem.is_scalar or elem.is_void:
                raise TypeMismatchError(f"unsupported array element type {t.element}")
            return Ty(elem.prim, t.count)
        if isinstance(t, ir.VoidType):
            return PRIMS["void"]
        if isinstance(t, ir.FloatType):
            return PRIMS["f32"]
        if isinstance(t, ir.IntType):
            if t.width == 1: return PRIMS["bool"]
            if t.width == 8: return PRIMS["char"]
            if t.width == 32: return PRIMS["i32"]
        raise TypeMismatchError(f"unsupported backend type {t}")

def make_prim_types() -> Dict[str, Ty]:
    return {name: Ty(name) for name in PRIM_NAMES}

PRIMS = make_prim_types()

# ----- LLVM type mapping
def ty_to_ir(ty: Ty) -> ir.Type:
    if ty.prim == "void": base = ir.VoidType()
    elif ty.prim == "bool": base = ir.IntType(1)
    elif ty.prim == "i32": base = ir.IntType(32)
    elif ty.prim == "f32": base = ir.FloatType()
    elif ty.prim == "char": base = ir.IntType(8)
    else:
        raise RuntimeError(f"internal: unmapped primitive {ty.prim}")
    if ty.array_size is not None:
        base = ir.ArrayType(base, ty.array_size)
    if ty.is_pointer:
        base = base.as_pointer()
    return base

def ty_of(v: ir.Value) -> Ty:
    return Ty.from_ir(v.type)

def zero_value(t: ir.Type) -> ir.Constant:
    if isinstance(t, ir.IntType):
        return ir.Constant(t, 0)
    if isinstance(t, ir.FloatType):
        return ir.Constant(t, 0.0)
    return ir.Constant(t, None)

# ============================================================
# Symbols
# ============================================================

@dataclass
class Symbol:
    value: Optional[ir.Value]        # runtime handle, absent until materialized
    slot: Optional[ir.Value]         # stack slot backing the value
    ty: Ty

    def __post_init__(self):
        if self.slot is not None and self.value is not None and self.value.type != ty_to_ir(self.ty):
            raise RuntimeError(f"internal: value of shape {self.value.type} stored in a {self.ty} slot")

class SymbolTable:
    def __init__(self) -> None:
        self.scopes: List[Dict[str, Symbol]] = []

    @property
    def depth(self) -> int:
        return len(self.scopes)

    def push_scope(self):
        self.scopes.append({})

    def pop_scope(self):
        if not self.scopes:
            raise RuntimeError("internal: pop_scope on an empty symbol table")
        self.scopes.pop()

    @contextlib.contextmanager
    def scope(self):
        """Bracket a block: the scope is popped on every exit path."""
        self.push_scope()
        try:
            yield self
        finally:
            self.pop_scope()

    def declare(self, name: str, symbol: Symbol):
        if not self.scopes:
            raise RuntimeError(f"internal: declaring '{name}' outside of any scope")
        # same-scope re-declaration replaces the earlier symbol
        self.scopes[-1][name] = symbol

    def resolve(self, name: str, pos: int = -1) -> Symbol:
        for scope in reversed(self.scopes):
            sym = scope.get(name)
            if sym is not None:
                return sym
        raise NameResolutionError(f"cannot find value '{name}' in this scope", pos)

# ============================================================
# Operators
# ============================================================

OP_SYMBOLS = {
    "PLUS": "+", "MINUS": "-", "TIMES": "*", "DIVIDE": "/", "MOD": "%",
    "EQ": "==", "NE": "!=", "LT": "<", "GT": ">", "LE": "<=", "GE": ">=",
    "ANDAND": "&&", "OROR": "||",
}

# op -> (integer builder method, float builder method, result name)
ARITHMETIC = {
    "PLUS":   ("add", "fadd", "addtmp"),
    "MINUS":  ("sub", "fsub", "subtmp"),
    "TIMES":  ("mul", "fmul", "multmp"),
    "DIVIDE": ("sdiv", "fdiv", "divtmp"),
    "MOD":    ("srem", "frem", "modtmp"),
}

COMPARISONS = {"EQ": "==", "NE": "!=", "LT": "<", "GT": ">", "LE": "<=", "GE": ">="}

LOGICAL = {"ANDAND": ("and_", "andtmp"), "OROR": ("or_", "ortmp")}

def apply_binary(builder: ir.IRBuilder, op: str, lhs: ir.Value, rhs: ir.Value, pos: int = -1) -> ir.Value:
    sym = OP_SYMBOLS.get(op)
    if sym is None:
        raise RuntimeError(f"internal: unknown binary operator {op}")
    if lhs.type != rhs.type:
        raise TypeMismatchError(
            f"mismatched operand types for '{sym}': {ty_of(lhs)} vs {ty_of(rhs)}", pos,
            hint="use 'as' to convert one operand explicitly")
    ty = ty_of(lhs)

    if op in LOGICAL:
        if not ty.is_integer:
            raise TypeMismatchError(f"'{sym}' requires integer or bool operands, got {ty} and {ty}", pos)
        meth, name = LOGICAL[op]
        return getattr(builder, meth)(lhs, rhs, name=name)

    if not (ty.is_integer or ty.is_float):
        raise TypeMismatchError(f"'{sym}' cannot be applied to operands of type {ty} and {ty}", pos)

    if op in ARITHMETIC:
        int_meth, float_meth, name = ARITHMETIC[op]
        return getattr(builder, float_meth if ty.is_float else int_meth)(lhs, rhs, name=name)

    if ty.is_float:
        return builder.fcmp_unordered(COMPARISONS[op], lhs, rhs, name="cmptmp")
    return builder.icmp_signed(COMPARISONS[op], lhs, rhs, name="cmptmp")

# ============================================================
# Casts
# ============================================================

def cast_value(builder: ir.IRBuilder, v: ir.Value, src: Ty, dst: Ty, pos: int = -1) -> ir.Value:
    if src == dst: return v
    if src.is_scalar and dst.is_scalar and not src.is_void and not dst.is_void:
        # any -> bool is a truth test
        if dst.prim == "bool":
            if src.is_float:
                return builder.fcmp_ordered("!=", v, ir.Constant(v.type, 0.0), name="tobool")
            return builder.icmp_signed("!=", v, ir.Constant(v.type, 0), name="tobool")
        dst_ir = ty_to_ir(dst)
        # bool -> int/float (unsigned)
        if src.prim == "bool":
            if dst.is_float:
                return builder.uitofp(v, dst_ir, name="conv")
            return builder.zext(v, dst_ir, name="conv")
        # int -> int
        if src.is_integer and dst.is_integer:
            if dst_ir.width > v.type.width:
                return builder.sext(v, dst_ir, name="conv")
            return builder.trunc(v, dst_ir, name="conv")
        # int -> float
        if src.is_integer and dst.is_float:
            return builder.sitofp(v, dst_ir, name="conv")
        # float -> int
        if src.is_float and dst.is_integer:
            return builder.fptosi(v, dst_ir, name="conv")
    raise TypeMismatchError(f"unsupported cast {src} -> {dst}", pos)

def to_bool(builder: ir.IRBuilder, v: ir.Value, pos: int = -1) -> ir.Value:
    ty = ty_of(v)
    if not (ty.is_integer or ty.is_float):
        raise TypeMismatchError(f"cannot use a value of type {ty} as a condition", pos)
    return cast_value(builder, v, ty, PRIMS["bool"], pos)

# ============================================================
# Compilation context
# ============================================================

class Context:
    def __init__(self, name: str = MODULE_NAME):
        self.module = ir.Module(name=name)
        self.builder = ir.IRBuilder()
        self.symbols = SymbolTable()

    def entry_alloca(self, ty: Ty, name: str) -> ir.Value:
        # hoisted to the entry block, ahead of its terminator
        with self.builder.goto_entry_block():
            return self.builder.alloca(ty_to_ir(ty), name=name)

    def lookup_function(self, name: str, pos: int = -1) -> ir.Function:
        func = self.module.globals.get(name)
        if not isinstance(func, ir.Function):
            raise NameResolutionError(f"cannot find function '{name}'", pos,
                                      hint="functions must be declared before they are called")
        return func

def verify_function(module: ir.Module, func: ir.Function):
    try:
        binding.parse_assembly(str(module)).verify()
    except RuntimeError as e:
        raise VerificationError(f"function '{func.name}' failed verification: {e}") from e

def signature_str(param_types: List[Ty], ret: Ty) -> str:
    return f"fn({', '.join(str(t) for t in param_types)}) -> {ret}"

# ============================================================
# AST
# ============================================================

@dataclass(frozen=True)
class Node:
    pos: int = field(default=-1, kw_only=True, compare=False)

@dataclass(frozen=True)
class ValueNode(Node):
    def lower(self, ctx: Context) -> Optional[ir.Value]:
        raise NotImplementedError(type(self).__name__)

    def lower_for_effect(self, ctx: Context):
        self.lower(ctx)

@dataclass(frozen=True)
class MultiAssignableNode(Node):
    def multi_assign(self, ctx: Context, values: List[Optional[ir.Value]]):
        raise NotImplementedError(type(self).__name__)

@dataclass(frozen=True)
class AssignableNode(ValueNode, MultiAssignableNode):
    def locate(self, ctx: Context) -> Tuple[ir.Value, Ty]:
        """Return the storage address and its declared type."""
        raise NotImplementedError(type(self).__name__)

    def lower(self, ctx: Context) -> ir.Value:
        ptr, ty = self.locate(ctx)
        return ctx.builder.load(ptr, name="load", typ=ty_to_ir(ty))

    def assign(self, ctx: Context, value: ir.Value):
        ptr, ty = self.locate(ctx)
        store_value(ctx, ptr, ty, value, self.pos)

    def multi_assign(self, ctx: Context, values: List[Optional[ir.Value]]):
        ptr, ty = self.locate(ctx)
        distribute(ctx, ptr, ty, values, self.pos)

@dataclass(frozen=True)
class AggregateNode(Node):
    def lower(self, ctx: Context) -> List[Optional[ir.Value]]:
        raise NotImplementedError(type(self).__name__)

# ---- lowering helpers

def lower_value(node: ValueNode, ctx: Context) -> ir.Value:
    v = node.lower(ctx)
    if v is None:
        raise TypeMismatchError("expression produces no value", node.pos)
    return v

def store_value(ctx: Context, ptr: ir.Value, ty: Ty, value: ir.Value, pos: int = -1):
    value = cast_value(ctx.builder, value, ty_of(value), ty, pos)
    ctx.builder.store(value, ptr)

def distribute(ctx: Context, ptr: ir.Value, ty: Ty, values: List[Optional[ir.Value]], pos: int = -1):
    """Store values positionally; short lists repeat their last value."""
    if any(v is None for v in values):
        raise TypeMismatchError("list element produces no value", pos)
    if not ty.is_array:
        if len(values) != 1:
            raise ArityError(f"cannot assign {len(values)} values to a single {ty}", pos)
        store_value(ctx, ptr, ty, values[0], pos)
        return
    if not values:
        raise ArityError(f"cannot assign an empty list to {ty}", pos)
    if len(values) > ty.array_size:
        raise ArityError(f"too many values for {ty}: expected at most {ty.array_size}, got {len(values)}", pos)
    elem = ty.element()
    converted = [cast_value(ctx.builder, v, ty_of(v), elem, pos) for v in values]
    zero = ir.Constant(ir.IntType(32), 0)
    for i in range(ty.array_size):
        slot = ctx.builder.gep(ptr, [zero, ir.Constant(ir.IntType(32), i)], inbounds=True, name="elem")
        ctx.builder.store(converted[min(i, len(converted) - 1)], slot)

# ---- literals

@dataclass(frozen=True)
class I32Node(ValueNode):
    value: int

    def lower(self, ctx: Context) -> ir.Value:
        return ir.Constant(ir.IntType(32), self.value)

@dataclass(frozen=True)
class F32Node(ValueNode):
    value: float

    def lower(self, ctx: Context) -> ir.Value:
        return ir.Constant(ir.FloatType(), self.value)

@dataclass(frozen=True)
class CharNode(ValueNode):
    value: int  # signed byte

    def lower(self, ctx: Context) -> ir.Value:
        return ir.Constant(ir.IntType(8), self.value)

@dataclass(frozen=True)
class BoolNode(ValueNode):
    value: bool

    def lower(self, ctx: Context) -> ir.Value:
        return ir.Constant(ir.IntType(1), 1 if self.value else 0)

# ---- expressions

@dataclass(frozen=True)
class BinaryExprNode(ValueNode):
    op: str
    lhs: ValueNode
    rhs: ValueNode

    def lower(self, ctx: Context) -> ir.Value:
        lhs = lower_value(self.lhs, ctx)
        rhs = lower_value(self.rhs, ctx)
        return apply_binary(ctx.builder, self.op, lhs, rhs, self.pos)

@dataclass(frozen=True)
class CastOpNode(ValueNode):
    ty: Ty
    value: ValueNode

    def lower(self, ctx: Context) -> ir.Value:
        v = lower_value(self.value, ctx)
        return cast_value(ctx.builder, v, ty_of(v), self.ty, self.pos)

@dataclass(frozen=True)
class VariableNode(AssignableNode):
    name: str

    def locate(self, ctx: Context) -> Tuple[ir.Value, Ty]:
        sym = ctx.symbols.resolve(self.name, self.pos)
        if sym.slot is None:
            raise RuntimeError(f"internal: symbol '{self.name}' has no storage slot")
        return sym.slot, sym.ty

    def lower(self, ctx: Context) -> ir.Value:
        ptr, ty = self.locate(ctx)
        # the recorded type, not one re-derived from the slot
        return ctx.builder.load(ptr, name=self.name, typ=ty_to_ir(ty))

@dataclass(frozen=True)
class ArrayAccessNode(AssignableNode):
    array: AssignableNode
    index: ValueNode

    def locate(self, ctx: Context) -> Tuple[ir.Value, Ty]:
        base, ty = self.array.locate(ctx)
        if not ty.is_array:
            raise TypeMismatchError(f"cannot index a value of type {ty}", self.pos)
        idx = lower_value(self.index, ctx)
        idx_ty = ty_of(idx)
        if not idx_ty.is_integer:
            raise TypeMismatchError(f"array index must be an integer, got {idx_ty}", self.index.pos)
        idx = cast_value(ctx.builder, idx, idx_ty, PRIMS["i32"], self.pos)
        if isinstance(idx, ir.Constant) and isinstance(idx.constant, int):
            if not 0 <= idx.constant < ty.array_size:
                raise BoundsError(f"index {idx.constant} is out of bounds for {ty}", self.index.pos)
        zero = ir.Constant(ir.IntType(32), 0)
        return ctx.builder.gep(base, [zero, idx], inbounds=True, name="elem"), ty.element()

@dataclass(frozen=True)
class DereferenceNode(AssignableNode):
    pointer: ValueNode

    def locate(self, ctx: Context) -> Tuple[ir.Value, Ty]:
        ptr = lower_value(self.pointer, ctx)
        ty = ty_of(ptr)
        if not ty.is_pointer:
            raise TypeMismatchError(f"cannot dereference non-pointer type {ty}", self.pos)
        return ptr, ty.pointee()

@dataclass(frozen=True)
class AddressOfNode(ValueNode):
    target: AssignableNode

    def __post_init__(self):
        if not isinstance(self.target, AssignableNode):
            raise TypeError(f"cannot take the address of {type(self.target).__name__}")

    def lower(self, ctx: Context) -> ir.Value:
        ptr, _ = self.target.locate(ctx)
        return ptr

@dataclass(frozen=True)
class FunctionCallNode(ValueNode):
    name: str
    args: "ListNode"

    def lower(self, ctx: Context) -> Optional[ir.Value]:
        func = ctx.lookup_function(self.name, self.pos)
        param_types = func.ftype.args
        if len(self.args.items) != len(param_types):
            raise ArityError(
                f"function '{self.name}' takes {len(param_types)} argument(s) but {len(self.args.items)} were supplied",
                self.pos)
        args = []
        for node, value, pty in zip(self.args.items, self.args.lower(ctx), param_types):
            if value is None:
                raise TypeMismatchError("argument produces no value", node.pos)
            args.append(cast_value(ctx.builder, value, ty_of(value), Ty.from_ir(pty), node.pos))
        if isinstance(func.ftype.return_type, ir.VoidType):
            ctx.builder.call(func, args)
            return None
        return ctx.builder.call(func, args, name="call")

# ---- statements

@dataclass(frozen=True)
class VariableDeclarationNode(ValueNode):
    ty: Ty
    name: str
    value: Optional[Union[ValueNode, AggregateNode]] = None

    def lower(self, ctx: Context) -> None:
        self.ty.require_storable(self.pos)
        value = None
        values = None
        if isinstance(self.value, AggregateNode):
            values = self.value.lower(ctx)
        elif self.value is not None:
            value = lower_value(self.value, ctx)
            value = cast_value(ctx.builder, value, ty_of(value), self.ty, self.value.pos)
        slot = ctx.entry_alloca(self.ty, self.name)
        if value is not None:
            ctx.builder.store(value, slot)
        elif values is not None:
            distribute(ctx, slot, self.ty, values, self.pos)
        ctx.symbols.declare(self.name, Symbol(value, slot, self.ty))
        return None

@dataclass(frozen=True)
class AssignmentNode(ValueNode):
    target: AssignableNode
    value: ValueNode

    def lower(self, ctx: Context) -> None:
        value = lower_value(self.value, ctx)
        self.target.assign(ctx, value)
        return None

@dataclass(frozen=True)
class MultiAssignmentNode(ValueNode):
    target: MultiAssignableNode
    values: AggregateNode

    def lower(self, ctx: Context) -> None:
        values = self.values.lower(ctx)
        self.target.multi_assign(ctx, values)
        return None

@dataclass(frozen=True)
class TargetListNode(MultiAssignableNode):
    targets: Tuple[AssignableNode, ...]

    def multi_assign(self, ctx: Context, values: List[Optional[ir.Value]]):
        if len(values) != len(self.targets):
            raise ArityError(
                f"cannot assign {len(values)} value(s) to {len(self.targets)} target(s)", self.pos)
        for target, value in zip(self.targets, values):
            if value is None:
                raise TypeMismatchError("list element produces no value", target.pos)
            target.assign(ctx, value)

# ---- aggregates

@dataclass(frozen=True)
class ListNode(AggregateNode):
    items: Tuple[Node, ...] = ()

    def lower(self, ctx: Context) -> List[Optional[ir.Value]]:
        return [item.lower(ctx) for item in self.items]

@dataclass(frozen=True)
class RootNode(ListNode):
    pass

@dataclass(frozen=True)
class BlockNode(ValueNode):
    body: ListNode
    is_void: bool = False

    def lower(self, ctx: Context) -> Optional[ir.Value]:
        return self._lower(ctx, want_value=True)

    def lower_for_effect(self, ctx: Context):
        self._lower(ctx, want_value=False)

    def _lower(self, ctx: Context, want_value: bool) -> Optional[ir.Value]:
        items = self.body.items
        with ctx.symbols.scope():
            for item in items[:-1]:
                item.lower_for_effect(ctx)
            if not items:
                return None
            tail = items[-1]
            if want_value and not self.is_void:
                return tail.lower(ctx)
            tail.lower_for_effect(ctx)
            return None

# ---- functions

@dataclass(frozen=True)
class Parameter:
    name: str
    ty: Ty
    pos: int = -1

@dataclass(frozen=True)
class FunctionDeclNode(ValueNode):
    name: str
    params: Tuple[Parameter, ...]
    ret: Ty

    def lower(self, ctx: Context) -> ir.Function:
        for p in self.params:
            p.ty.require_storable(p.pos, what=f"parameter '{p.name}'")
        param_types = [p.ty for p in self.params]
        func_ty = ir.FunctionType(ty_to_ir(self.ret), [ty_to_ir(t) for t in param_types])

        existing = ctx.module.globals.get(self.name)
        if existing is not None:
            if not isinstance(existing, ir.Function) or existing.ftype != func_ty:
                old = existing.ftype if isinstance(existing, ir.Function) else existing.type
                raise TypeMismatchError(
                    f"conflicting declaration of '{self.name}': {old} vs {signature_str(param_types, self.ret)}",
                    self.pos)
            return existing

        func = ir.Function(ctx.module, func_ty, name=self.name)
        for arg, p in zip(func.args, self.params):
            arg.name = p.name
        return func

@dataclass(frozen=True)
class FunctionDefNode(ValueNode):
    decl: FunctionDeclNode
    body: ValueNode

    def lower(self, ctx: Context) -> ir.Function:
        func = self.decl.lower(ctx)
        if not func.is_declaration:
            raise DuplicateDefinitionError(f"function '{self.decl.name}' is defined more than once", self.decl.pos)
        builder = ctx.builder
        builder.position_at_end(func.append_basic_block("entry"))

        with ctx.symbols.scope():
            # one stack slot per parameter
            for arg, param in zip(func.args, self.decl.params):
                slot = builder.alloca(arg.type, name=param.name)
                builder.store(arg, slot)
                ctx.symbols.declare(param.name, Symbol(arg, slot, Ty.from_ir(arg.type)))

            ret = self.decl.ret
            if ret.is_void:
                self.body.lower_for_effect(ctx)
                builder.ret_void()
            else:
                value = self.body.lower(ctx)
                if value is None:
                    raise ControlFlowError(
                        f"function '{self.decl.name}' must produce a value of type {ret}", self.decl.pos,
                        hint="end the body with an expression and no trailing ';'")
                builder.ret(cast_value(builder, value, ty_of(value), ret, self.body.pos))

        verify_function(ctx.module, func)
        return func

# ---- control flow

def lower_conditional(ctx: Context, cond: ValueNode, then: ValueNode, else_: Optional[ValueNode],
                      want_value: bool, pos: int = -1) -> Optional[ir.Value]:
    builder = ctx.builder
    cond_val = to_bool(builder, lower_value(cond, ctx), cond.pos)
    cond_bb = builder.block

    then_bb = builder.append_basic_block("if.then")
    else_bb = builder.append_basic_block("if.else") if else_ is not None else None
    merge_bb = builder.append_basic_block("if.merge")
    builder.cbranch(cond_val, then_bb, else_bb if else_bb is not None else merge_bb)

    builder.position_at_end(then_bb)
    then_val = None
    if want_value:
        then_val = then.lower(ctx)
        if then_val is None:
            raise ControlFlowError("'if' branch produces no value where one is required", then.pos)
    else:
        then.lower_for_effect(ctx)
    builder.branch(merge_bb)
    then_end = builder.block

    else_val = None
    else_end = cond_bb
    if else_ is not None:
        builder.position_at_end(else_bb)
        if want_value:
            else_val = else_.lower(ctx)
            if else_val is None:
                raise ControlFlowError("'else' branch produces no value where one is required", else_.pos)
        else:
            else_.lower_for_effect(ctx)
        builder.branch(merge_bb)
        else_end = builder.block

    builder.position_at_end(merge_bb)
    if not want_value:
        return None

    if else_val is None:
        # no else: the fall-through edge carries the zero value
        else_val = zero_value(then_val.type)
    elif else_val.type != then_val.type:
        raise TypeMismatchError(
            f"'if' and 'else' branches have mismatched types: {ty_of(then_val)} vs {ty_of(else_val)}", pos)
    phi = builder.phi(then_val.type, name="iftmp")
    phi.add_incoming(then_val, then_end)
    phi.add_incoming(else_val, else_end)
    return phi

@dataclass(frozen=True)
class CondExprNode(ValueNode):
    cond: ValueNode
    then: ValueNode
    else_: Optional[ValueNode] = None

    def lower(self, ctx: Context) -> ir.Value:
        return lower_conditional(ctx, self.cond, self.then, self.else_, True, self.pos)

    def lower_for_effect(self, ctx: Context):
        lower_conditional(ctx, self.cond, self.then, self.else_, False, self.pos)

@dataclass(frozen=True)
class CondStatementNode(ValueNode):
    cond: ValueNode
    then: ValueNode
    else_: Optional[ValueNode] = None

    def lower(self, ctx: Context) -> None:
        return lower_conditional(ctx, self.cond, self.then, self.else_, False, self.pos)

# ============================================================
# Lexer
# ============================================================

reserved = {
    "fn": "FN",
    "var": "VAR",
    "if": "IF",
    "else": "ELSE",
    "as": "AS",
    "true": "TRUE",
    "false": "FALSE",

    # primitive types (keywords)
    "i32": "KW_I32",
    "f32": "KW_F32",
    "char": "KW_CHAR",
    "bool": "KW_BOOL",
    "void": "KW_VOID",
}

tokens = (
    # literals & ids
    "NAME", "NUMBER", "FLOAT", "CHAR",

    # punctuation
    "LPAREN", "RPAREN", "LBRACE", "RBRACE", "LBRACKET", "RBRACKET",
    "COMMA", "COLON", "SEMICOLON", "ASSIGN", "ARROW", "AMP",

    # operators
    "PLUS", "MINUS", "TIMES", "DIVIDE", "MOD",
    "EQ", "NE", "LT", "GT", "LE", "GE", "ANDAND", "OROR",

    # keywords
    "FN", "VAR", "IF", "ELSE", "AS", "TRUE", "FALSE",

    # type keywords
    "KW_I32", "KW_F32", "KW_CHAR", "KW_BOOL", "KW_VOID",
)

t_ignore = " \t\r"

def t_comment(t):
    r'//[^\n]*'
    pass

# Multi-character operators (must come before single-char)
def t_ARROW(t):
    r'->'
    return t

def t_ANDAND(t):
    r'&&'
    return t

def t_OROR(t):
    r'\|\|'
    return t

def t_EQ(t):
    r'=='
    return t

def t_NE(t):
    r'!='
    return t

def t_LE(t):
    r'<='
    return t

def t_GE(t):
    r'>='
    return t

# Single-character tokens
t_LPAREN   = r"\("
t_RPAREN   = r"\)"
t_LBRACE   = r"\{"
t_RBRACE   = r"\}"
t_LBRACKET = r"\["
t_RBRACKET = r"\]"
t_COMMA    = r","
t_COLON    = r":"
t_SEMICOLON= r";"
t_ASSIGN   = r"="
t_AMP      = r"&"
t_PLUS     = r"\+"
t_MINUS    = r"-"
t_TIMES    = r"\*"
t_DIVIDE   = r"/"
t_MOD      = r"%"
t_LT       = r"<"
t_GT       = r">"

def t_FLOAT(t):
    r'\d+\.\d+'
    t.value = float(t.value)
    return t

def t_NUMBER(t):
    r'\d+'
    t.value = int(t.value)
    return t

def t_CHAR(t):
    r"'([^'\\\n]|\\[^\n]+?)'"
    text = bytes(t.value[1:-1], "utf-8").decode("unicode_escape")
    if len(text) != 1 or ord(text) > 0xFF:
        raise ParseError(f"invalid character literal {t.value}", t.lexpos,
                         hint="character literals hold a single byte")
    code = ord(text)
    t.value = code - 0x100 if code > 0x7F else code
    return t

def t_NAME(t):
    r'[A-Za-z_][A-Za-z0-9_]*'
    t.type = reserved.get(t.value, "NAME")
    return t

def t_newline(t):
    r'\n+'
    t.lexer.lineno += len(t.value)

def t_error(t):
    raise ParseError(f"unexpected character {t.value[0]!r}", t.lexpos)

# ============================================================
# Parser (PLY)
# ============================================================

# Precedence - ordered from lowest to highest
precedence = (
    ('left', 'OROR'),
    ('left', 'ANDAND'),
    ('left', 'EQ', 'NE'),
    ('left', 'LT', 'LE', 'GT', 'GE'),
    ('left', 'PLUS', 'MINUS'),
    ('left', 'TIMES', 'DIVIDE', 'MOD'),
    ('left', 'AS'),
    ('right', 'UMINUS', 'UDEREF', 'UADDR'),  # Unary operators
    ('left', 'LBRACKET'),
)

def attach_parser(src: Source):
    lexer = lex()
    parser = yacc(start="program", debug=False, write_tables=False)
    lexer.input(src.text)
    return lexer, parser

def _as_statement(node: Node) -> Node:
    # a conditional followed by ';' is used only for its effects
    if isinstance(node, CondExprNode):
        return CondStatementNode(node.cond, node.then, node.else_, pos=node.pos)
    return node

# Grammar

def p_program(p):
    """program : items"""
    p[0] = RootNode(tuple(p[1]), pos=0)

def p_items(p):
    """items : items item
             | """
    if len(p) == 3:
        p[0] = p[1] + [p[2]]
    else:
        p[0] = []

def p_item(p):
    """item : func_decl
            | func_def"""
    p[0] = p[1]

def p_func_signature(p):
    """func_signature : FN NAME LPAREN params RPAREN ret_type"""
    ret = p[6] if p[6] is not None else PRIMS["void"]
    p[0] = FunctionDeclNode(p[2], tuple(p[4]), ret, pos=p.lexpos(2))

def p_func_decl(p):
    """func_decl : func_signature SEMICOLON"""
    p[0] = p[1]

def p_func_def(p):
    """func_def : func_signature block"""
    p[0] = FunctionDefNode(p[1], p[2], pos=p[1].pos)

def p_params(p):
    """params : params COMMA param
              | param
              | """
    if len(p) == 4:
        p[0] = p[1] + [p[3]]
    elif len(p) == 2:
        p[0] = [p[1]]
    else:
        p[0] = []

def p_param(p):
    """param : NAME COLON type_name"""
    p[0] = Parameter(p[1], p[3], pos=p.lexpos(1))

def p_ret_type(p):
    """ret_type : ARROW type_name
                | """
    p[0] = p[2] if len(p) == 3 else None

def p_type_name(p):
    """type_name : scalar_type
                 | scalar_type TIMES
                 | scalar_type LBRACKET NUMBER RBRACKET
                 | scalar_type LBRACKET NUMBER RBRACKET TIMES"""
    size = p[3] if len(p) >= 5 else None
    is_pointer = len(p) in (3, 6)
    try:
        p[0] = Ty(p[1], size, is_pointer)
    except InvalidTypeError as e:
        e.pos = p.lexpos(1)
        raise

def p_scalar_type(p):
    """scalar_type : KW_I32
                   | KW_F32
                   | KW_CHAR
                   | KW_BOOL
                   | KW_VOID"""
    p[0] = p[1]

def p_block(p):
    """block : LBRACE stmts RBRACE
             | LBRACE stmts expression RBRACE"""
    items = list(p[2])
    if len(p) == 5:
        items.append(p[3])
    body = ListNode(tuple(items), pos=p.lexpos(1))
    p[0] = BlockNode(body, len(p) == 4, pos=p.lexpos(1))

def p_stmts(p):
    """stmts : stmts stmt
             | """
    if len(p) == 3:
        p[0] = p[1] + [p[2]]
    else:
        p[0] = []

def p_stmt(p):
    """stmt : expression SEMICOLON
            | var_decl SEMICOLON
            | assignment SEMICOLON"""
    p[0] = _as_statement(p[1])

def p_var_decl(p):
    """var_decl : VAR NAME COLON type_name
                | VAR NAME COLON type_name ASSIGN expression
                | VAR NAME COLON type_name ASSIGN list_literal"""
    value = p[6] if len(p) == 7 else None
    p[0] = VariableDeclarationNode(p[4], p[2], value, pos=p.lexpos(2))

def p_assignment(p):
    """assignment : expression ASSIGN expression
                  | expression ASSIGN list_literal
                  | list_literal ASSIGN list_literal"""
    target, value = p[1], p[3]
    if isinstance(target, ListNode):
        for t in target.items:
            if not isinstance(t, AssignableNode):
                raise ParseError("invalid assignment target in list", t.pos)
        target = TargetListNode(tuple(target.items), pos=target.pos)
    elif not isinstance(target, AssignableNode):
        raise ParseError("invalid left-hand side of assignment", p.lexpos(2),
                         hint="only variables, array elements and dereferenced pointers can be assigned")
    if isinstance(value, ListNode):
        p[0] = MultiAssignmentNode(target, value, pos=p.lexpos(2))
    else:
        p[0] = AssignmentNode(target, value, pos=p.lexpos(2))

def p_list_literal(p):
    """list_literal : LBRACKET args RBRACKET"""
    p[0] = ListNode(tuple(p[2]), pos=p.lexpos(1))

def p_args(p):
    """args : args COMMA expression
            | expression
            | """
    if len(p) == 4:
        p[0] = p[1] + [p[3]]
    elif len(p) == 2:
        p[0] = [p[1]]
    else:
        p[0] = []

def p_expression_binops(p):
    """expression : expression PLUS expression
                  | expression MINUS expression
                  | expression TIMES expression
                  | expression DIVIDE expression
                  | expression MOD expression
                  | expression ANDAND expression
                  | expression OROR expression
                  | expression EQ expression
                  | expression NE expression
                  | expression LT expression
                  | expression LE expression
                  | expression GT expression
                  | expression GE expression"""
    p[0] = BinaryExprNode(p.slice[2].type, p[1], p[3], pos=p.lexpos(2))

def p_expression_number(p):
    """expression : NUMBER
                  | MINUS NUMBER %prec UMINUS"""
    value = p[1] if len(p) == 2 else -p[2]
    if not INT32_MIN <= value <= INT32_MAX:
        raise ParseError(f"integer literal {value} is out of range for i32", p.lexpos(1))
    p[0] = I32Node(value, pos=p.lexpos(1))

def p_expression_float(p):
    """expression : FLOAT
                  | MINUS FLOAT %prec UMINUS"""
    value = p[1] if len(p) == 2 else -p[2]
    p[0] = F32Node(value, pos=p.lexpos(1))

def p_expression_char(p):
    """expression : CHAR"""
    p[0] = CharNode(p[1], pos=p.lexpos(1))

def p_expression_bool(p):
    """expression : TRUE
                  | FALSE"""
    p[0] = BoolNode(p.slice[1].type == "TRUE", pos=p.lexpos(1))

def p_expression_name(p):
    """expression : NAME"""
    p[0] = VariableNode(p[1], pos=p.lexpos(1))

def p_expression_call(p):
    """expression : NAME LPAREN args RPAREN"""
    p[0] = FunctionCallNode(p[1], ListNode(tuple(p[3]), pos=p.lexpos(2)), pos=p.lexpos(1))

def p_expression_group(p):
    """expression : LPAREN expression RPAREN"""
    p[0] = p[2]

def p_expression_cast(p):
    """expression : expression AS scalar_type"""
    p[0] = CastOpNode(PRIMS[p[3]], p[1], pos=p.lexpos(2))

def p_expression_index(p):
    """expression : expression LBRACKET expression RBRACKET"""
    if not isinstance(p[1], AssignableNode):
        raise ParseError("only variables, array elements and dereferenced pointers can be indexed", p.lexpos(2))
    p[0] = ArrayAccessNode(p[1], p[3], pos=p.lexpos(2))

def p_expression_deref(p):
    """expression : TIMES expression %prec UDEREF"""
    p[0] = DereferenceNode(p[2], pos=p.lexpos(1))

def p_expression_addr(p):
    """expression : AMP expression %prec UADDR"""
    if not isinstance(p[2], AssignableNode):
        raise ParseError("cannot take the address of a temporary value", p.lexpos(1),
                         hint="'&' applies to variables, array elements and dereferenced pointers")
    p[0] = AddressOfNode(p[2], pos=p.lexpos(1))

def p_expression_if(p):
    """expression : if_expr"""
    p[0] = p[1]

def p_expression_block(p):
    """expression : block"""
    p[0] = p[1]

def p_if_expr(p):
    """if_expr : IF LPAREN expression RPAREN block
               | IF LPAREN expression RPAREN block ELSE block
               | IF LPAREN expression RPAREN block ELSE if_expr"""
    else_ = p[7] if len(p) == 8 else None
    p[0] = CondExprNode(p[3], p[5], else_, pos=p.lexpos(1))

def p_error(p):
    if p is None:
        raise ParseError("unexpected end of file",
                         hint="check for unclosed braces, parentheses, or missing semicolons")

    token_name, token_value = p.type, p.value
    hint = None
    if token_name == 'RBRACE':
        msg = "unexpected '}'"
        hint = "check for missing semicolons or malformed statements before this brace"
    elif token_name in ('KW_I32', 'KW_F32', 'KW_CHAR', 'KW_BOOL', 'KW_VOID'):
        msg = f"unexpected type name '{token_value}'"
        hint = "type names cannot appear in expression context"
    elif token_name == 'ASSIGN':
        msg = "unexpected '='"
        hint = "assignments are statements and must end with ';'"
    else:
        msg = f"unexpected token '{token_value}'"
    raise ParseError(msg, p.lexpos, hint)

# ============================================================
# Driver: parse, lower, print
# ============================================================

def parse_source(src: Source) -> RootNode:
    lexer, parser = attach_parser(src)
    try:
        root = parser.parse(lexer=lexer, tracking=True)
    except ParseError as e:
        if e.pos < 0:
            e.pos = max(len(src.text) - 1, 0)
        raise
    if root is None:
        raise ParseError("syntax error", 0)
    return root

def lower_program(root: RootNode, name: str = MODULE_NAME) -> Tuple[Context, List[Optional[ir.Value]]]:
    ctx = Context(name)
    values = root.lower(ctx)
    return ctx, values

def emit_ir(values: List[Optional[ir.Value]]) -> str:
    # a declaration later defined is printed once, where it first appeared
    out: List[str] = []
    seen = set()
    for v in values:
        if v is None or id(v) in seen:
            continue
        seen.add(id(v))
        out.append(str(v))
    return "\n".join(out) + ("\n" if out else "")

def compile_source(src: Source, es: ErrorSink) -> Optional[str]:
    try:
        root = parse_source(src)
        _, values = lower_program(root, os.path.splitext(os.path.basename(src.path))[0] or MODULE_NAME)
    except CompileError as e:
        es.error(e.msg, src, e.pos, e.hint)
        return None
    return emit_ir(values)

def emit_object(llvm_ir: str) -> bytes:
    binding.initialize_native_target()
    binding.initialize_native_asmprinter()

    triple = binding.get_default_triple()
    target = binding.Target.from_triple(triple)
    tm = target.create_target_machine(reloc="pic")

    mod = binding.parse_assembly(llvm_ir)
    mod.triple = triple
    mod.verify()
    return tm.emit_object(mod)

def compile_file(path: str, output: Optional[str] = None, emit_obj: bool = False, use_color: bool = True) -> int:
    try:
        src = Source.from_path(path)
    except OSError as e:
        print(f"error: cannot read {path}: {e.strerror}")
        return 1

    es = ErrorSink()
    llvm_ir = compile_source(src, es)
    if not es.ok():
        es.dump(use_color=use_color)
        return 1

    if emit_obj:
        out = output or os.path.splitext(path)[0] + ".o"
        with open(out, "wb") as f:
            f.write(emit_object(llvm_ir))
        print(f"Wrote {out}")
    elif output:
        with open(output, "w", encoding="utf-8") as f:
            f.write(llvm_ir)
        print(f"Wrote {output}")
    else:
        sys.stdout.write(llvm_ir)
    return 0

# ============================================================
# CLI
# ============================================================

EXAMPLE = r'''
// forward declaration
fn fact(n: i32) -> i32;

fn fact(n: i32) -> i32 {
    if (n <= 1) { 1 } else { n * fact(n - 1) }
}

fn fill(xs: i32[4]*, v: i32) {
    *xs = [v];
}

fn main() -> i32 {
    var xs: i32[4] = [1, 2];
    fill(&xs, fact(3));
    var avg: f32 = (xs[0] + xs[3]) as f32 / 2.0;
    avg as i32
}
'''

USAGE = f"usage: chiselc <file{SOURCE_SUFFIX}> [-o OUTPUT] [--obj] [--no-color]"

def main(argv: Optional[List[str]] = None) -> int:
    args = sys.argv[1:] if argv is None else argv

    # No CLI args? Compile the built-in example to stdout.
    if not args:
        print("No inputs provided. Compiling the built-in example ...")
        es = ErrorSink()
        llvm_ir = compile_source(Source.from_text(EXAMPLE, path="example" + SOURCE_SUFFIX), es)
        if llvm_ir is None:
            es.dump()
            return 1
        sys.stdout.write(llvm_ir)
        return 0

    # Parse args: <file> [-o OUTPUT] [--obj] [--no-color]
    files: List[str] = []
    output: Optional[str] = None
    emit_obj = False
    use_color = True
    i = 0
    while i < len(args):
        arg = args[i]
        if arg in ("-h", "--help"):
            print(USAGE)
            return 0
        if arg in ("-o", "--output"):
            if i + 1 >= len(args):
                print("error: -o/--output requires a path")
                return 2
            output = args[i + 1]
            i += 2
            continue
        if arg == "--obj":
            emit_obj = True
        elif arg == "--no-color":
            use_color = False
        elif arg.startswith("-"):
            print(f"error: unknown option '{arg}'")
            print(USAGE)
            return 2
        else:
            files.append(arg)
        i += 1

    if not files:
        print("error: no input files")
        return 2
    if len(files) > 1:
        print("error: exactly one input file is supported")
        return 2
    if not files[0].endswith(SOURCE_SUFFIX):
        print(f"error: expected a {SOURCE_SUFFIX} input, got '{files[0]}'")
        return 2

    return compile_file(files[0], output=output, emit_obj=emit_obj, use_color=use_color)


if __name__ == "__main__":
    sys.exit(main())
