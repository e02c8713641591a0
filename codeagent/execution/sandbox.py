"""Execution sandbox for model-generated Python.

Code runs with ``exec`` against a fresh namespace built from the binding: a
snapshot of the persisted user variables, the read-only ``tools`` and
``agents`` tables, and a restricted set of built-ins. If the last statement is
an expression, its value becomes the step result, REPL style. Functions and
classes kept from earlier steps are rebound to the new namespace first.

``final_answer`` exits through ``FinalAnswerSignal``; the sandbox turns that
into ``Binding.final_answer`` instead of letting it escape. Every other fault
(syntax errors, runtime exceptions, ``SystemExit``) comes back as
``ExecutionResult.error``.

This is a guard against accidents, not a security boundary: tool functions
run with full process privileges.
"""
from __future__ import annotations

import ast
import builtins
import copy
import logging
import types
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional

from codeagent.memory.binding import Binding
from codeagent.tools.final_answer import FINAL_ANSWER_TOOL, FinalAnswerSignal, FinalAnswerTool

logger = logging.getLogger(__name__)

AGENT_MODULE = "__agent__"

RESERVED_NAMES = frozenset({"tools", "agents", FINAL_ANSWER_TOOL, "print"})

ALLOWED_MODULES = frozenset(
    {
        "collections",
        "datetime",
        "decimal",
        "fractions",
        "functools",
        "itertools",
        "json",
        "math",
        "operator",
        "random",
        "re",
        "statistics",
        "string",
        "textwrap",
    }
)

_SAFE_BUILTIN_NAMES = (
    "abs", "all", "any", "ascii", "bin", "bool", "bytes", "callable", "chr",
    "dict", "dir", "divmod", "enumerate", "filter", "float", "format",
    "frozenset", "getattr", "hasattr", "hash", "hex", "int", "isinstance",
    "issubclass", "iter", "len", "list", "map", "max", "min", "next", "object",
    "oct", "ord", "pow", "range", "repr", "reversed", "round", "set", "slice",
    "sorted", "str", "sum", "tuple", "type", "zip", "__build_class__",
    "classmethod", "property", "staticmethod", "super",
    "ArithmeticError", "AssertionError", "AttributeError", "Exception",
    "IndexError", "KeyError", "LookupError", "NameError", "NotImplementedError",
    "RuntimeError", "StopIteration", "TypeError", "ValueError",
    "SystemExit", "ZeroDivisionError",
)

_SAFE_BUILTINS: Dict[str, Any] = {name: getattr(builtins, name) for name in _SAFE_BUILTIN_NAMES}
_SAFE_BUILTINS.update({"True": True, "False": False, "None": None})

_FALLBACK_FINAL_ANSWER = FinalAnswerTool()


@dataclass(frozen=True)
class ExecutionResult:
    """Outcome of one ``execute`` call.

    On success ``binding`` is the updated binding and ``new_variables`` holds
    only the user variables that were introduced or changed. On failure only
    ``error`` (and any captured ``output``) is set.
    """

    binding: Optional[Binding] = None
    value: Any = None
    new_variables: Mapping[str, Any] = field(default_factory=dict)
    output: str = ""
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def is_final(self) -> bool:
        return self.ok and self.binding is not None and self.binding.has_final_answer


def execute(code: str, binding: Binding) -> ExecutionResult:
    logger.debug("Executing code:\n%s", code)
    try:
        tree = ast.parse(code, mode="exec")
    except SyntaxError as exc:
        return ExecutionResult(error=f"SyntaxError: {exc.msg} (line {exc.lineno})")

    violation = _find_reserved_binding(tree)
    if violation:
        return ExecutionResult(error=f"NameError: cannot rebind reserved name {violation!r}")

    lineno = _find_catch_all(tree)
    if lineno is not None:
        return ExecutionResult(
            error="SyntaxError: bare 'except:' and 'except BaseException' are not allowed, "
            f"catch Exception instead (line {lineno})"
        )

    output: List[str] = []
    env = _prepare_namespace(binding, output)
    try:
        value = _run(tree, env)
    except FinalAnswerSignal as signal:
        variables = _collect_variables(env)
        logger.debug("Final answer produced: %r", signal.answer)
        return ExecutionResult(
            binding=binding.with_variables(variables).with_final_answer(signal.answer),
            value=signal.answer,
            new_variables=_changed(binding.variables, variables),
            output="".join(output),
        )
    except (Exception, SystemExit) as exc:
        message = f"{type(exc).__name__}: {exc}"
        logger.debug("Execution failed: %s", message)
        return ExecutionResult(error=message, output="".join(output))

    variables = _collect_variables(env)
    return ExecutionResult(
        binding=binding.with_variables(variables),
        value=value,
        new_variables=_changed(binding.variables, variables),
        output="".join(output),
    )


def _run(tree: ast.Module, env: Dict[str, Any]) -> Any:
    body = tree.body
    if body and isinstance(body[-1], ast.Expr):
        head = ast.Module(body=body[:-1], type_ignores=[])
        tail = ast.Expression(body=body[-1].value)
        exec(compile(head, "<agent>", "exec"), env)
        return eval(compile(tail, "<agent>", "eval"), env)
    exec(compile(tree, "<agent>", "exec"), env)
    return None


def _find_reserved_binding(tree: ast.AST) -> Optional[str]:
    for node in ast.walk(tree):
        names: List[str] = []
        if isinstance(node, ast.Name) and isinstance(node.ctx, (ast.Store, ast.Del)):
            names.append(node.id)
        elif isinstance(node, (ast.FunctionDef, ast.AsyncFunctionDef, ast.ClassDef)):
            names.append(node.name)
        elif isinstance(node, ast.alias):
            names.append(node.asname or node.name.split(".")[0])
        elif isinstance(node, (ast.Global, ast.Nonlocal)):
            names.extend(node.names)
        elif isinstance(node, ast.ExceptHandler) and node.name:
            names.append(node.name)
        for name in names:
            if name in RESERVED_NAMES:
                return name
    return None


def _find_catch_all(tree: ast.AST) -> Optional[int]:
    """Line of the first handler that would also catch ``FinalAnswerSignal``."""
    for node in ast.walk(tree):
        if isinstance(node, ast.ExceptHandler) and _catches_base_exception(node.type):
            return node.lineno
    return None


def _catches_base_exception(handler_type: Optional[ast.expr]) -> bool:
    if handler_type is None:
        return True
    if isinstance(handler_type, ast.Tuple):
        return any(_catches_base_exception(element) for element in handler_type.elts)
    return isinstance(handler_type, ast.Name) and handler_type.id == "BaseException"


def _prepare_namespace(binding: Binding, output: List[str]) -> Dict[str, Any]:
    safe_builtins = dict(_SAFE_BUILTINS)
    safe_builtins["__import__"] = _restricted_import
    safe_builtins["print"] = _make_print(output)

    env: Dict[str, Any] = {"__builtins__": safe_builtins, "__name__": AGENT_MODULE}
    env.update(_snapshot(binding.variables))
    _rebind_definitions(env)
    env["tools"] = binding.tools
    env["agents"] = binding.agents
    env[FINAL_ANSWER_TOOL] = binding.tools.get(FINAL_ANSWER_TOOL) or _FALLBACK_FINAL_ANSWER
    return env


def _rebind_definitions(env: Dict[str, Any]) -> None:
    # functions from earlier steps still point at that step's globals
    for name, value in list(env.items()):
        if isinstance(value, types.FunctionType):
            env[name] = _rebind(value, env)
        elif isinstance(value, type) and value.__module__ == AGENT_MODULE:
            _rebind_methods(value, env)


def _rebind(function: types.FunctionType, env: Dict[str, Any]) -> types.FunctionType:
    if function.__globals__ is env or function.__globals__.get("__name__") != AGENT_MODULE:
        return function
    clone = types.FunctionType(
        function.__code__, env, function.__name__, function.__defaults__, function.__closure__
    )
    clone.__kwdefaults__ = function.__kwdefaults__
    clone.__qualname__ = function.__qualname__
    clone.__doc__ = function.__doc__
    clone.__dict__.update(function.__dict__)
    return clone


def _rebind_methods(cls: type, env: Dict[str, Any]) -> None:
    for name, member in list(vars(cls).items()):
        if isinstance(member, types.FunctionType):
            setattr(cls, name, _rebind(member, env))
        elif isinstance(member, (staticmethod, classmethod)) and isinstance(member.__func__, types.FunctionType):
            setattr(cls, name, type(member)(_rebind(member.__func__, env)))
        elif isinstance(member, property):
            accessors = [
                _rebind(f, env) if isinstance(f, types.FunctionType) else f
                for f in (member.fget, member.fset, member.fdel)
            ]
            setattr(cls, name, property(*accessors, member.__doc__))


def _restricted_import(name, globals=None, locals=None, fromlist=(), level=0):
    root = name.split(".")[0]
    if level != 0 or root not in ALLOWED_MODULES:
        raise ImportError(f"import of {name!r} is not allowed in the sandbox")
    return builtins.__import__(name, globals, locals, fromlist, level)


def _make_print(output: List[str]) -> Callable[..., None]:
    def _print(*args: Any, sep: str = " ", end: str = "\n", **_: Any) -> None:
        output.append(sep.join(str(arg) for arg in args) + end)

    return _print


def _snapshot(variables: Mapping[str, Any]) -> Dict[str, Any]:
    snapshot: Dict[str, Any] = {}
    for name, value in variables.items():
        try:
            snapshot[name] = copy.deepcopy(value)
        except Exception:
            # modules, locks, live clients: share the reference
            snapshot[name] = value
    return snapshot


def _collect_variables(env: Mapping[str, Any]) -> Dict[str, Any]:
    return {
        name: value
        for name, value in env.items()
        if name not in RESERVED_NAMES and not (name.startswith("__") and name.endswith("__"))
    }


def _changed(previous: Mapping[str, Any], current: Mapping[str, Any]) -> Dict[str, Any]:
    return {
        name: value
        for name, value in current.items()
        if name not in previous or not _same(previous[name], value)
    }


def _same(old: Any, new: Any) -> bool:
    if old is new:
        return True
    if isinstance(old, types.FunctionType) and isinstance(new, types.FunctionType):
        # a rebound function is the same definition
        return old.__code__ is new.__code__ and old.__closure__ is new.__closure__
    try:
        return bool(old == new)
    except Exception:
        # ambiguous comparisons (array-likes) count as changed
        return False
