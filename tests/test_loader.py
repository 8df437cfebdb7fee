"""
Tests for loading IR programs from JSON.
"""

from pathlib import Path

import pytest

from symir.frontend.loader import load_program, load_program_dict
from symir.ir.program import (
    Assert, Assign, BinaryOp, BinOp, Call, Cast, CheckedBinaryOp, ConstIndex, Constant, Copy, Deref,
    Field, Goto, Index, Len, Nop, Place, Ref, Return, SwitchInt, UnaryOp, UnOp, Unreachable, Use,
)
from symir.ir.types import (
    BOOL, BYTE_SLICE_REF, CHAR, STR_REF, U8, U32, U64, UNIT, USIZE,
    ArrayTy, FnPtrTy, RawPtrTy, RefTy, SliceTy, StructTy, TupleTy,
)

FIXTURES = Path(__file__).parent / "fixtures"


def single_function(locals_, blocks, **extra):
    return {"functions": [{"name": "f", "locals": locals_, "blocks": blocks, **extra}]}


def load_types(*types, structs=None):
    data = {"functions": [{"name": "f", "locals": list(types), "blocks": [{"terminator": "return"}]}]}
    if structs:
        data["structs"] = structs
    return load_program_dict(data).get_function("f").locals


class TestTypes:

    def test_primitives(self):
        assert load_types("()", "u8", "usize", "bool", "char") == [UNIT, U8, USIZE, BOOL, CHAR]

    def test_pointers(self):
        assert load_types("()", "&[u8]", "&mut u32", "*const u8", "*mut [u8]", "&str") == [
            UNIT, BYTE_SLICE_REF, RefTy(U32, True), RawPtrTy(U8), RawPtrTy(SliceTy(U8), True), STR_REF,
        ]

    def test_arrays_and_tuples(self):
        assert load_types("[u8; 4]", "[[u8; 2]; 3]", "(u8, bool)", "(u32,)") == [
            ArrayTy(U8, 4), ArrayTy(ArrayTy(U8, 2), 3), TupleTy((U8, BOOL)), TupleTy((U32,)),
        ]

    def test_type_objects(self):
        locals_ = load_types({"tuple": ["u8", "u64"]}, {"struct": "P", "fields": [["x", "u32"]]})
        assert locals_ == [TupleTy((U8, U64)), StructTy("P", (("x", U32),))]

    def test_named_struct(self):
        locals_ = load_types("()", "Pair", "&Pair", structs={"Pair": {"fields": [["a", "u8"], ["b", "u32"]]}})
        pair = StructTy("Pair", (("a", U8), ("b", U32)))
        assert locals_ == [UNIT, pair, RefTy(pair)]

    def test_fn_pointer(self):
        assert load_types("fn(u8) -> u8")[0] == FnPtrTy("fn(u8) -> u8")

    def test_unknown_type(self):
        with pytest.raises(ValueError, match=r"\$\.functions\[0\]\.locals\[1\]"):
            load_types("()", "Mystery")


class TestStatements:

    def _block(self, statements, terminator="return"):
        data = single_function(["()", "u8", "u8", "(u8, bool)", "&u8", "usize"],
                               [{"statements": statements, "terminator": terminator}])
        return load_program_dict(data).get_function("f").blocks[0]

    def test_rvalues(self):
        block = self._block([
            {"assign": 1, "rvalue": {"use": {"const": 3, "ty": "u8"}}},
            {"assign": 2, "rvalue": {"binary": "shl", "lhs": {"copy": 1}, "rhs": {"const": 1, "ty": "u32"}}},
            {"assign": 3, "rvalue": {"checked": "add", "lhs": {"copy": 1}, "rhs": {"copy": 2}}},
            {"assign": 2, "rvalue": {"unary": "not", "operand": {"copy": 1}}},
            {"assign": 4, "rvalue": {"ref": 1}},
            {"assign": 5, "rvalue": {"cast": {"copy": 1}, "ty": "usize"}},
            {"assign": 5, "rvalue": {"len": {"local": 4, "projections": ["deref"]}}},
            "nop",
        ])
        one, two = Copy(Place(1)), Copy(Place(2))
        assert block.statements == [
            Assign(Place(1), Use(Constant(3, U8))),
            Assign(Place(2), BinaryOp(BinOp.SHL, one, Constant(1, U32))),
            Assign(Place(3), CheckedBinaryOp(BinOp.ADD, one, two)),
            Assign(Place(2), UnaryOp(UnOp.NOT, one)),
            Assign(Place(4), Ref(Place(1), False)),
            Assign(Place(5), Cast(one, USIZE)),
            Assign(Place(5), Len(Place(4, (Deref(),)))),
            Nop(),
        ]

    def test_projections(self):
        block = self._block([
            {"assign": 1, "rvalue": {"use": {"copy": {"local": 3, "projections": [{"field": 0}]}}}},
            {"assign": 1, "rvalue": {"use": {"copy": {"local": 4, "projections": ["deref", {"const_index": 2}, {"index": 5}]}}}},
        ])
        assert block.statements[0].rvalue.operand.place == Place(3, (Field(0),))
        assert block.statements[1].rvalue.operand.place == Place(4, (Deref(), ConstIndex(2), Index(5)))

    def test_unknown_operator(self):
        with pytest.raises(ValueError, match="unknown operator 'pow'"):
            self._block([{"assign": 2, "rvalue": {"binary": "pow", "lhs": {"copy": 1}, "rhs": {"copy": 1}}}])

    def test_local_out_of_range(self):
        with pytest.raises(ValueError, match=r"statements\[0\]\.assign: local 9 out of range"):
            self._block([{"assign": 9, "rvalue": {"use": {"copy": 1}}}])

    def test_index_local_out_of_range(self):
        with pytest.raises(ValueError, match=r"projections\[1\]: local 6 out of range"):
            self._block([{"assign": 1, "rvalue": {"use": {"copy": {"local": 4, "projections": ["deref", {"index": 6}]}}}}])

    def test_unknown_statement_names_path(self):
        with pytest.raises(ValueError, match=r"blocks\[0\]\.statements\[0\]"):
            self._block([{"frobnicate": 1}])


class TestTerminators:

    def _terminators(self, *terms):
        blocks = [{"terminator": t} for t in terms]
        data = single_function(["()", "u8"], blocks)
        return [b.terminator for b in load_program_dict(data).get_function("f").blocks]

    def test_all_kinds(self):
        terms = self._terminators(
            {"goto": 1},
            {"switch_int": {"copy": 1}, "values": [1, 2], "targets": [2, 3], "otherwise": 4},
            {"assert": {"const": True, "ty": "bool"}, "expected": True, "target": 0, "message": "m"},
            {"call": "g", "args": [{"copy": 1}], "destination": 1, "target": 0, "type_args": ["u8"]},
            {"call": "panic"},
            "return", "abort", "unreachable",
        )
        assert terms[0] == Goto(1)
        assert terms[1] == SwitchInt(Copy(Place(1)), (1, 2), (2, 3), 4)
        assert terms[2] == Assert(Constant(True, BOOL), True, 0, "m")
        assert terms[3] == Call("g", (Copy(Place(1)),), Place(1), 0, (U8,))
        assert terms[4] == Call("panic", (), None, None)
        assert terms[5] == Return()
        assert isinstance(terms[7], Unreachable)

    @pytest.mark.parametrize("term,where", [
        ({"goto": 7}, r"terminator\.goto: block 7 out of range"),
        ({"switch_int": {"copy": 1}, "values": [1], "targets": [0], "otherwise": 3}, r"\.otherwise"),
        ({"assert": {"copy": 1}, "expected": True, "target": -1}, r"\.target"),
        ({"call": "g", "target": 2}, r"\.target"),
        ({"goto": "1"}, "expected an integer"),
    ])
    def test_block_targets_are_checked(self, term, where):
        with pytest.raises(ValueError, match=where):
            load_program_dict(single_function(["()", "u8"], [{"terminator": "return"}, {"terminator": term}]))

    def test_switch_length_mismatch(self):
        with pytest.raises(ValueError, match="differ in length"):
            self._terminators({"switch_int": {"copy": 1}, "values": [1], "targets": [], "otherwise": 0})


class TestCallChecks:

    def _load(self, *calls, functions=()):
        blocks = [{"terminator": dict(c, target=k + 1)} for k, c in enumerate(calls)] + [{"terminator": "return"}]
        data = single_function(["()", "u32", "*mut u8"], blocks)
        data["functions"].extend(functions)
        return load_program_dict(data)

    def test_intrinsic_arity(self):
        with pytest.raises(ValueError, match=r"blocks\[0\]\.terminator: ctpop takes 1 arguments but 0 were given"):
            self._load({"call": "ctpop", "args": [], "destination": 1})

    def test_builtin_arity(self):
        with pytest.raises(ValueError, match="alloc takes 2 arguments"):
            self._load({"call": "alloc", "args": [{"const": 4, "ty": "usize"}], "destination": 2})

    def test_function_arity_with_later_definition(self):
        callee = {"name": "g", "arg_count": 1, "locals": ["()", "u32"], "blocks": [{"terminator": "return"}]}
        with pytest.raises(ValueError, match="g takes 1 arguments but 2 were given"):
            self._load({"call": "g", "args": [{"copy": 1}, {"copy": 1}]}, functions=[callee])

    def test_valid_calls(self):
        prog = self._load(
            {"call": "ctpop", "args": [{"copy": 1}], "destination": 1},
            {"call": "alloc", "args": [{"const": 4, "ty": "usize"}, {"const": 4, "ty": "usize"}], "destination": 2},
            {"call": "panic"},
        )
        assert len(prog.get_function("f").blocks) == 4

    def test_unknown_callee_is_left_to_execution(self):
        prog = self._load({"call": "frobnicate", "args": []})
        assert prog.get_function("f").blocks[0].terminator.func == "frobnicate"


class TestPrograms:

    def test_overflow_fixture(self):
        prog = load_program(FIXTURES / "overflow.json")
        target = prog.get_function("target")
        assert target.arg_count == 1
        assert target.param_types == [BYTE_SLICE_REF]
        assert len(target.blocks) == 4

    def test_struct_fixture(self):
        prog = load_program(FIXTURES / "safe_main.json")
        main = prog.get_function("main")
        assert main.locals[1] == StructTy("Pair", (("a", U32), ("b", U64)))

    def test_invalid_json(self, tmp_path):
        path = tmp_path / "broken.json"
        path.write_text("{not json")
        with pytest.raises(ValueError, match="invalid JSON"):
            load_program(path)

    def test_missing_functions(self):
        with pytest.raises(ValueError, match=r"\$\.functions"):
            load_program_dict({})

    def test_too_few_locals(self):
        with pytest.raises(ValueError, match="locals must hold"):
            load_program_dict(single_function(["()"], [{"terminator": "return"}], arg_count=1))

    def test_top_level_must_be_object(self):
        with pytest.raises(ValueError):
            load_program_dict([])
