"""Shared fixtures: compile Chisel source and run it through MCJIT."""

import ctypes

import pytest
from llvmlite import binding

import chiselc


class Jit:
    def __init__(self, module_text: str):
        mod = binding.parse_assembly(module_text)
        mod.verify()
        # the engine takes ownership of both the module and its target machine
        target_machine = binding.Target.from_default_triple().create_target_machine()
        self.engine = binding.create_mcjit_compiler(mod, target_machine)
        self.engine.finalize_object()

    def function(self, name: str, restype, *argtypes):
        addr = self.engine.get_function_address(name)
        assert addr, f"function {name!r} was not compiled"
        return ctypes.CFUNCTYPE(restype, *argtypes)(addr)


def lower_text(text: str):
    root = chiselc.parse_source(chiselc.Source.from_text(text))
    return chiselc.lower_program(root)


@pytest.fixture(scope="session")
def native_target():
    binding.initialize_native_target()
    binding.initialize_native_asmprinter()


@pytest.fixture
def jit(native_target):
    def _compile(text: str) -> Jit:
        ctx, _ = lower_text(text)
        return Jit(str(ctx.module))
    return _compile
