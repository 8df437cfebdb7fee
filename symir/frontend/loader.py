"""
Frontend: load IR programs from JSON.

A program file looks like:

    {
      "structs": {"Pair": {"fields": [["a", "u32"], ["b", "u64"]]}},
      "functions": [
        {
          "name": "target",
          "arg_count": 1,
          "locals": ["()", "&[u8]", "u8"],
          "blocks": [
            {"statements": [{"assign": 2, "rvalue": {"use": {"copy": {"local": 1, "projections": ["deref", {"const_index": 0}]}}}}],
             "terminator": "return"}
          ]
        }
      ]
    }

Types are strings ("u8", "&[u8]", "*const u32", "[u8; 4]", "(u8, bool)",
"&str", a struct name) or objects ({"tuple": [...]}, {"struct": name,
"fields": [[name, ty], ...]}). Places are a local index or
{"local": n, "projections": [...]}. Malformed input raises ValueError
naming the JSON path of the offending element.
"""

import json
from pathlib import Path
from typing import Any, Union

from ..errors import EvalError
from ..ir.program import (
    Abort, Assert, Assign, BasicBlock, BinaryOp, BinOp, Call, Cast, CheckedBinaryOp, ConstIndex,
    Constant, Copy, Deref, Field, Function, Goto, Index, Len, Nop, Place, Program, Ref, Return,
    SwitchInt, UnaryOp, UnOp, Unreachable, Use,
)
from ..ir.types import (
    BOOL, CHAR, F32, F64, I8, I16, I32, I64, I128, ISIZE, U8, U16, U32, U64, U128, UNIT, USIZE,
    ArrayTy, FnPtrTy, RawPtrTy, RefTy, SliceTy, StrTy, StructTy, TupleTy, Ty,
)
from ..semantics.intrinsics import Intrinsic, intrinsic_arity
from ..semantics.state import ExecutionState

_PRIMITIVES = {
    "i8": I8, "i16": I16, "i32": I32, "i64": I64, "i128": I128, "isize": ISIZE,
    "u8": U8, "u16": U16, "u32": U32, "u64": U64, "u128": U128, "usize": USIZE,
    "bool": BOOL, "char": CHAR, "f32": F32, "f64": F64, "str": StrTy(), "()": UNIT,
}


def load_program(path: Union[str, Path]) -> Program:
    """Load a JSON program file."""
    with open(path) as f:
        try:
            data = json.load(f)
        except json.JSONDecodeError as e:
            raise ValueError(f"{path}: invalid JSON: {e}") from e
    return load_program_dict(data)


def load_program_dict(data: dict) -> Program:
    """Build a Program from already-decoded JSON."""
    return _ProgramBuilder(data).build()


def _split_top_level(text: str, sep: str = ",") -> list[str]:
    """Split on `sep` where it is not nested in brackets."""
    parts, depth, current = [], 0, []
    for ch in text:
        if ch in "([":
            depth += 1
        elif ch in ")]":
            depth -= 1
        if ch == sep and depth == 0:
            parts.append("".join(current).strip())
            current = []
        else:
            current.append(ch)
    tail = "".join(current).strip()
    if tail:
        parts.append(tail)
    return parts


def _as_index(raw: Any, path: str) -> int:
    if not isinstance(raw, int) or isinstance(raw, bool):
        raise ValueError(f"{path}: expected an integer, got {raw!r}")
    return raw


class _ProgramBuilder:
    def __init__(self, data: Any):
        if not isinstance(data, dict):
            raise ValueError("$: expected an object")
        self.data = data
        self.structs: dict[str, StructTy] = {}
        self.num_locals = 0
        self.num_blocks = 0
        self.calls: list = []

    def build(self) -> Program:
        for name, raw in (self.data.get("structs") or {}).items():
            self.structs[name] = self._struct(name, raw, f"$.structs.{name}")
        program = Program()
        functions = self.data.get("functions")
        if not isinstance(functions, list):
            raise ValueError("$.functions: expected a list")
        for i, fn in enumerate(functions):
            program.add(self._function(fn, f"$.functions[{i}]"))
        for call, path in self.calls:
            self._check_call(program, call, path)
        return program

    # Types

    def _struct(self, name: str, raw: Any, path: str) -> StructTy:
        if not isinstance(raw, dict) or not isinstance(raw.get("fields"), list):
            raise ValueError(f"{path}: expected {{\"fields\": [...]}}")
        fields = []
        for j, entry in enumerate(raw["fields"]):
            if not isinstance(entry, list) or len(entry) != 2:
                raise ValueError(f"{path}.fields[{j}]: expected [name, type]")
            fields.append((entry[0], self.ty(entry[1], f"{path}.fields[{j}]")))
        return StructTy(name, tuple(fields), bool(raw.get("drop", False)))

    def ty(self, raw: Any, path: str) -> Ty:
        if isinstance(raw, dict):
            if "tuple" in raw:
                return TupleTy(tuple(self.ty(t, f"{path}.tuple[{k}]") for k, t in enumerate(raw["tuple"])))
            if "struct" in raw:
                name = raw["struct"]
                if "fields" not in raw:
                    return self._named(name, path)
                return self._struct(name, raw, path)
            raise ValueError(f"{path}: unknown type object {raw!r}")
        if not isinstance(raw, str):
            raise ValueError(f"{path}: expected a type, got {raw!r}")
        return self._parse_type(raw.strip(), path)

    def _named(self, name: str, path: str) -> Ty:
        if name not in self.structs:
            raise ValueError(f"{path}: unknown type {name!r}")
        return self.structs[name]

    def _parse_type(self, text: str, path: str) -> Ty:
        if text in _PRIMITIVES:
            return _PRIMITIVES[text]
        if text.startswith("&mut "):
            return RefTy(self._parse_type(text[5:].strip(), path), mutable=True)
        if text.startswith("&"):
            return RefTy(self._parse_type(text[1:].strip(), path))
        if text.startswith("*const "):
            return RawPtrTy(self._parse_type(text[7:].strip(), path))
        if text.startswith("*mut "):
            return RawPtrTy(self._parse_type(text[5:].strip(), path), mutable=True)
        if text.startswith("fn("):
            return FnPtrTy(text)
        if text.startswith("[") and text.endswith("]"):
            inner = _split_top_level(text[1:-1], ";")
            elem = self._parse_type(inner[0], path)
            if len(inner) == 1:
                return SliceTy(elem)
            try:
                return ArrayTy(elem, int(inner[1]))
            except ValueError:
                raise ValueError(f"{path}: bad array length in {text!r}") from None
        if text.startswith("(") and text.endswith(")"):
            return TupleTy(tuple(self._parse_type(t, path) for t in _split_top_level(text[1:-1])))
        return self._named(text, path)

    # Places, operands, rvalues

    def place(self, raw: Any, path: str) -> Place:
        if isinstance(raw, int) and not isinstance(raw, bool):
            return Place(self._local(raw, path))
        if not isinstance(raw, dict) or "local" not in raw:
            raise ValueError(f"{path}: expected a local index or {{\"local\": n, ...}}")
        projections = []
        for k, proj in enumerate(raw.get("projections", [])):
            ppath = f"{path}.projections[{k}]"
            if proj == "deref":
                projections.append(Deref())
            elif isinstance(proj, dict) and "field" in proj:
                projections.append(Field(int(proj["field"])))
            elif isinstance(proj, dict) and "const_index" in proj:
                projections.append(ConstIndex(int(proj["const_index"])))
            elif isinstance(proj, dict) and "index" in proj:
                projections.append(Index(self._local(proj["index"], ppath)))
            else:
                raise ValueError(f"{ppath}: unknown projection {proj!r}")
        return Place(self._local(raw["local"], f"{path}.local"), tuple(projections))

    def _local(self, raw: Any, path: str) -> int:
        local = _as_index(raw, path)
        if not 0 <= local < self.num_locals:
            raise ValueError(f"{path}: local {local} out of range (function has {self.num_locals} locals)")
        return local

    def _target(self, raw: Any, path: str) -> int:
        target = _as_index(raw, path)
        if not 0 <= target < self.num_blocks:
            raise ValueError(f"{path}: block {target} out of range (function has {self.num_blocks} blocks)")
        return target

    def operand(self, raw: Any, path: str):
        if isinstance(raw, dict) and "copy" in raw:
            return Copy(self.place(raw["copy"], f"{path}.copy"))
        if isinstance(raw, dict) and "const" in raw:
            return Constant(raw["const"], self.ty(raw.get("ty"), f"{path}.ty"))
        raise ValueError(f"{path}: expected {{\"copy\": ...}} or {{\"const\": ..., \"ty\": ...}}")

    def _enum(self, enum_cls, value: Any, path: str):
        try:
            return enum_cls(value)
        except ValueError:
            raise ValueError(f"{path}: unknown operator {value!r}") from None

    def rvalue(self, raw: Any, path: str):
        if not isinstance(raw, dict):
            raise ValueError(f"{path}: expected an rvalue object")
        if "use" in raw:
            return Use(self.operand(raw["use"], f"{path}.use"))
        if "binary" in raw or "checked" in raw:
            key = "binary" if "binary" in raw else "checked"
            op = self._enum(BinOp, raw[key], f"{path}.{key}")
            lhs = self.operand(raw.get("lhs"), f"{path}.lhs")
            rhs = self.operand(raw.get("rhs"), f"{path}.rhs")
            return BinaryOp(op, lhs, rhs) if key == "binary" else CheckedBinaryOp(op, lhs, rhs)
        if "unary" in raw:
            return UnaryOp(self._enum(UnOp, raw["unary"], f"{path}.unary"),
                           self.operand(raw.get("operand"), f"{path}.operand"))
        if "cast" in raw:
            return Cast(self.operand(raw["cast"], f"{path}.cast"), self.ty(raw.get("ty"), f"{path}.ty"))
        if "ref" in raw:
            return Ref(self.place(raw["ref"], f"{path}.ref"), bool(raw.get("mutable", False)))
        if "len" in raw:
            return Len(self.place(raw["len"], f"{path}.len"))
        raise ValueError(f"{path}: unknown rvalue {raw!r}")

    # Statements and terminators

    def statement(self, raw: Any, path: str):
        if raw == "nop":
            return Nop()
        if isinstance(raw, dict) and "assign" in raw:
            return Assign(self.place(raw["assign"], f"{path}.assign"), self.rvalue(raw.get("rvalue"), f"{path}.rvalue"))
        raise ValueError(f"{path}: unknown statement {raw!r}")

    def terminator(self, raw: Any, path: str):
        simple = {"return": Return, "abort": Abort, "unreachable": Unreachable}
        if isinstance(raw, str) and raw in simple:
            return simple[raw]()
        if not isinstance(raw, dict):
            raise ValueError(f"{path}: unknown terminator {raw!r}")
        if "goto" in raw:
            return Goto(self._target(raw["goto"], f"{path}.goto"))
        if "switch_int" in raw:
            values, targets = raw.get("values", []), raw.get("targets", [])
            if len(values) != len(targets):
                raise ValueError(f"{path}: values and targets differ in length")
            return SwitchInt(self.operand(raw["switch_int"], f"{path}.switch_int"),
                             tuple(int(v) for v in values),
                             tuple(self._target(t, f"{path}.targets[{k}]") for k, t in enumerate(targets)),
                             self._target(raw.get("otherwise"), f"{path}.otherwise"))
        if "assert" in raw:
            return Assert(self.operand(raw["assert"], f"{path}.assert"), bool(raw.get("expected", True)),
                          self._target(raw.get("target"), f"{path}.target"), raw.get("message", "assertion failed"))
        if "call" in raw:
            destination = raw.get("destination")
            target = raw.get("target")
            call = Call(
                func=raw["call"],
                args=tuple(self.operand(a, f"{path}.args[{k}]") for k, a in enumerate(raw.get("args", []))),
                destination=None if destination is None else self.place(destination, f"{path}.destination"),
                target=None if target is None else self._target(target, f"{path}.target"),
                type_args=tuple(self.ty(t, f"{path}.type_args[{k}]") for k, t in enumerate(raw.get("type_args", []))),
            )
            self.calls.append((call, path))
            return call
        raise ValueError(f"{path}: unknown terminator {raw!r}")

    def _check_call(self, program: Program, call: Call, path: str):
        callee = program.get_function(call.func)
        if callee is not None:
            expected = callee.arg_count
        elif call.func in ExecutionState.BUILTINS:
            expected = ExecutionState.BUILTINS[call.func]
        else:
            try:
                expected = intrinsic_arity(Intrinsic.parse(call.func))
            except EvalError:
                # Unknown callees fail on the path that reaches them
                return
        if expected is not None and len(call.args) != expected:
            raise ValueError(f"{path}: {call.func} takes {expected} arguments but {len(call.args)} were given")

    def _function(self, raw: Any, path: str) -> Function:
        if not isinstance(raw, dict):
            raise ValueError(f"{path}: expected an object")
        for key in ("name", "locals", "blocks"):
            if key not in raw:
                raise ValueError(f"{path}: missing {key!r}")
        locals_ = [self.ty(t, f"{path}.locals[{k}]") for k, t in enumerate(raw["locals"])]
        arg_count = int(raw.get("arg_count", 0))
        if not locals_ or arg_count >= len(locals_):
            raise ValueError(f"{path}: locals must hold the return place and {arg_count} parameters")
        if not isinstance(raw["blocks"], list):
            raise ValueError(f"{path}.blocks: expected a list")
        self.num_locals, self.num_blocks = len(locals_), len(raw["blocks"])
        blocks = []
        for b, block in enumerate(raw["blocks"]):
            bpath = f"{path}.blocks[{b}]"
            if not isinstance(block, dict) or "terminator" not in block:
                raise ValueError(f"{bpath}: expected {{\"statements\": [...], \"terminator\": ...}}")
            statements = [self.statement(s, f"{bpath}.statements[{k}]") for k, s in enumerate(block.get("statements", []))]
            blocks.append(BasicBlock(statements, self.terminator(block["terminator"], f"{bpath}.terminator")))
        if not blocks:
            raise ValueError(f"{path}: a function needs at least one block")
        return Function(raw["name"], locals_, arg_count, blocks)
