"""
Closure packaging: turns a unit of work into a self-contained, picklable ClosurePackage, and back.

Plain pickle ships functions by reference (module + qualified name), which breaks for lambdas, nested functions and
anything defined in a script or a test module that the worker can't import. We instead walk the code of the function:
 - every name the code (or code nested in it) loads and which resolves in the function's module globals is captured,
 - every closure cell is captured,
 - names which resolve to builtins are left to the worker's builtins.
Captured values are encoded:
 - modules by name, imported on the worker,
 - functions living at the top level of an installed module (stdlib, site-packages, an installed distribution, or
   anything listed in `packages`) by reference -- this is where the recursion stops,
 - any other function by value, recursively, so a helper calling a helper calling a lambda gets shipped whole,
 - functools.partial and bound methods structurally, their wrapped function and arguments encoded as above,
 - everything else as plain pickled data.
Globals merely co-resident in the module but not referenced are not captured.
"""

import builtins
import functools
import importlib
import logging
import marshal
import os
import pickle
import site
import sys
import sysconfig
import types
from dataclasses import dataclass, field
from importlib import metadata
from typing import Any, Callable, Iterable, Optional

from futmap.errors import MissingDependency, PackagingError, UnresolvedBinding

logger = logging.getLogger(__name__)

_own_package = __name__.partition(".")[0]


@dataclass(frozen=True)
class ModuleRef:
    module: str


@dataclass(frozen=True)
class GlobalRef:
    module: str
    qualname: str


@dataclass(frozen=True)
class FunctionSlot:
    key: int


@dataclass(frozen=True)
class BoundMethodRef:
    function: Any
    instance: Any


@dataclass(frozen=True)
class PartialRef:
    function: Any
    args: tuple
    keywords: dict[str, Any]


@dataclass(frozen=True)
class EmptyCell:
    pass


@dataclass
class FunctionSpec:
    code: bytes  # marshalled code object
    name: str
    qualname: str
    module: Optional[str]
    freevars: tuple[str, ...]
    bindings: dict[str, Any] = field(default_factory=dict)
    cells: list[Any] = field(default_factory=list)
    defaults: Optional[tuple] = None
    kwdefaults: Optional[dict[str, Any]] = None


@dataclass
class ClosurePackage:
    function: Any
    args: tuple
    kwargs: dict[str, Any]
    functions: dict[int, FunctionSpec]
    packages: tuple[str, ...] = ()

    @property
    def captured_bindings(self) -> dict[str, Any]:
        """Names captured by the unit of work itself, with their encoded values."""
        if not isinstance(self.function, FunctionSlot):
            return {}
        spec = self.functions[self.function.key]
        captured = dict(spec.bindings)
        captured.update((n, c) for n, c in zip(spec.freevars, spec.cells) if not isinstance(c, EmptyCell))
        return captured

    def dumps(self) -> bytes:
        try:
            return pickle.dumps(self, protocol=pickle.HIGHEST_PROTOCOL)
        except (pickle.PicklingError, TypeError, AttributeError) as e:
            raise PackagingError(f"unit of work or its arguments can not be serialized: {e}") from e


# *** installed-module detection ***


@functools.lru_cache(maxsize=None)
def _distribution_modules() -> frozenset[str]:
    return frozenset(metadata.packages_distributions())


@functools.lru_cache(maxsize=None)
def _library_dirs() -> tuple[str, ...]:
    paths = {sysconfig.get_paths()[k] for k in ("stdlib", "platstdlib", "purelib", "platlib")}
    paths.update(site.getsitepackages())
    return tuple(os.path.join(os.path.abspath(p), "") for p in paths)


def is_installed(module_name: Optional[str], packages: Iterable[str] = ()) -> bool:
    """Whether the module can be assumed importable on a worker, i.e. needs not be shipped by value."""
    if not module_name:
        return False
    top = module_name.partition(".")[0]
    if top == "__main__":
        return False
    if module_name in packages or top in packages:
        return True
    if top == _own_package or top in sys.builtin_module_names or top in sys.stdlib_module_names:
        return True
    if top in _distribution_modules():
        return True
    path = getattr(sys.modules.get(top), "__file__", None)
    return bool(path) and os.path.abspath(path).startswith(_library_dirs())


def referenced_names(code: types.CodeType) -> set[str]:
    names = set(code.co_names)
    for const in code.co_consts:
        if isinstance(const, types.CodeType):
            names |= referenced_names(const)
    return names


# *** packing ***


class _Packer:
    def __init__(self, packages: tuple[str, ...]):
        self.packages = packages
        self.functions: dict[int, FunctionSpec] = {}
        self._keys: dict[int, int] = {}
        self._alive: list[Callable] = []  # ids must stay unique until we are done

    def encode(self, value: Any) -> Any:
        if isinstance(value, types.ModuleType):
            return ModuleRef(value.__name__)
        if isinstance(value, types.MethodType) and isinstance(value.__func__, types.FunctionType):
            return BoundMethodRef(self.encode(value.__func__), value.__self__)
        if isinstance(value, functools.partial):
            return PartialRef(
                self.encode(value.func),
                tuple(self.encode(a) for a in value.args),
                {k: self.encode(v) for k, v in value.keywords.items()},
            )
        if isinstance(value, types.FunctionType):
            if "<" not in value.__qualname__ and is_installed(value.__module__, self.packages):
                return GlobalRef(value.__module__, value.__qualname__)
            return self._pack_function(value)
        return value

    def _pack_function(self, fn: types.FunctionType) -> FunctionSlot:
        key = self._keys.get(id(fn))
        if key is not None:
            return FunctionSlot(key)
        key = len(self._keys)
        self._keys[id(fn)] = key
        self._alive.append(fn)
        code = fn.__code__
        spec = FunctionSpec(
            code=marshal.dumps(code),
            name=fn.__name__,
            qualname=fn.__qualname__,
            module=fn.__module__,
            freevars=code.co_freevars,
        )
        # registered before recursing so that (mutually) recursive functions terminate
        self.functions[key] = spec

        for name in sorted(referenced_names(code)):
            if name in fn.__globals__:
                spec.bindings[name] = self.encode(fn.__globals__[name])
        for cell in fn.__closure__ or ():
            try:
                contents = cell.cell_contents
            except ValueError:
                spec.cells.append(EmptyCell())
                continue
            spec.cells.append(self.encode(contents))
        if fn.__defaults__:
            spec.defaults = tuple(self.encode(v) for v in fn.__defaults__)
        if fn.__kwdefaults__:
            spec.kwdefaults = {k: self.encode(v) for k, v in fn.__kwdefaults__.items()}
        logger.debug(f"packaged {fn.__qualname__} with bindings {sorted(spec.bindings)} and cells {spec.freevars}")
        return FunctionSlot(key)


def pack(
    f: Callable, args: tuple = (), kwargs: Optional[dict[str, Any]] = None, packages: Iterable[str] = ()
) -> ClosurePackage:
    packer = _Packer(tuple(packages))
    function = packer.encode(f)
    encoded_args = tuple(packer.encode(a) for a in args)
    encoded_kwargs = {k: packer.encode(v) for k, v in (kwargs or {}).items()}
    return ClosurePackage(
        function=function,
        args=encoded_args,
        kwargs=encoded_kwargs,
        functions=packer.functions,
        packages=packer.packages,
    )


# *** unpacking, happens on the worker ***


def _import(module: str, binding: Optional[str]) -> types.ModuleType:
    try:
        return importlib.import_module(module)
    except ImportError as e:
        raise MissingDependency(module, binding) from e


class _Unpacker:
    def __init__(self, package: ClosurePackage):
        self.package = package
        self.functions: dict[int, types.FunctionType] = {}

    def build(self) -> None:
        # two phases: first create all function objects, then fill their namespaces, so cycles resolve
        for key, spec in self.package.functions.items():
            code = marshal.loads(spec.code)
            namespace = {"__builtins__": builtins, "__name__": spec.module}
            closure = tuple(types.CellType() for _ in spec.freevars) or None
            fn = types.FunctionType(code, namespace, spec.name, None, closure)
            fn.__qualname__ = spec.qualname
            self.functions[key] = fn
        for key, spec in self.package.functions.items():
            fn = self.functions[key]
            for name, value in spec.bindings.items():
                fn.__globals__[name] = self.decode(value, name)
            for cell, name, value in zip(fn.__closure__ or (), spec.freevars, spec.cells):
                if not isinstance(value, EmptyCell):
                    cell.cell_contents = self.decode(value, name)
            if spec.defaults is not None:
                fn.__defaults__ = tuple(self.decode(v, spec.name) for v in spec.defaults)
            if spec.kwdefaults is not None:
                fn.__kwdefaults__ = {k: self.decode(v, k) for k, v in spec.kwdefaults.items()}

    def decode(self, value: Any, binding: Optional[str]) -> Any:
        if isinstance(value, ModuleRef):
            return _import(value.module, binding)
        if isinstance(value, GlobalRef):
            obj: Any = _import(value.module, binding)
            for part in value.qualname.split("."):
                try:
                    obj = getattr(obj, part)
                except AttributeError as e:
                    raise UnresolvedBinding(f"{value.module}.{value.qualname}") from e
            return obj
        if isinstance(value, FunctionSlot):
            return self.functions[value.key]
        if isinstance(value, BoundMethodRef):
            return types.MethodType(self.decode(value.function, binding), value.instance)
        if isinstance(value, PartialRef):
            args = tuple(self.decode(a, binding) for a in value.args)
            keywords = {k: self.decode(v, k) for k, v in value.keywords.items()}
            return functools.partial(self.decode(value.function, binding), *args, **keywords)
        return value


def loads(payload: bytes) -> ClosurePackage:
    try:
        return pickle.loads(payload)
    except ModuleNotFoundError as e:
        raise MissingDependency(e.name or str(e)) from e
    except AttributeError as e:
        raise UnresolvedBinding(getattr(e, "name", None) or str(e)) from e


def unpack(package: ClosurePackage) -> tuple[Callable, tuple, dict[str, Any]]:
    for module in package.packages:
        _import(module, None)
    unpacker = _Unpacker(package)
    unpacker.build()
    f = unpacker.decode(package.function, "<unit of work>")
    args = tuple(unpacker.decode(a, None) for a in package.args)
    kwargs = {k: unpacker.decode(v, k) for k, v in package.kwargs.items()}
    return f, args, kwargs
