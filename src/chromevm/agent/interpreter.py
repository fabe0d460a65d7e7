"""Script interpreter: runs user-supplied Python source against the page.

A script is the body of an async function. It can ``await`` the page
capabilities, ``return`` a value, and log through ``console``::

    await page.goto("https://example.com")
    await page.wait_for_selector("h1")
    return await page.title()

The source is checked before compilation: imports, ``global``/``nonlocal``,
class definitions, generators, any name or attribute starting with an
underscore, and a set of reflective builtins are rejected. So are bare
``except:`` clauses and any ``return``, ``break`` or ``continue`` that
would leave a ``finally`` block, since either can swallow the
cancellation that ends a timed-out script.

The compiled function runs with a fixed builtins table. Every loop,
function body, lambda and comprehension iterator is instrumented with a
deadline checkpoint, so a script that never awaits still stops once its
time is up. A single builtin call on a huge input (``sum(range(10**12))``)
is not interrupted.
"""

from __future__ import annotations

import ast
import asyncio
import logging
import math
import time
from typing import Any, Iterable, Iterator

from chromevm.agent.capabilities import PageCapabilities, ScriptConsole, sleep
from chromevm.errors import ScriptError

logger = logging.getLogger(__name__)

SCRIPT_FILENAME = "<script>"
_ENTRYPOINT = "script_main"
_WRAPPER = f"async def {_ENTRYPOINT}(page, console, sleep):\n    pass\n"
_CHECKPOINT = "_chromevm_checkpoint"
_CHECKPOINT_ITER = "_chromevm_checkpoint_iter"

BLOCKED_NAMES = frozenset(
    {
        "breakpoint",
        "compile",
        "delattr",
        "dir",
        "eval",
        "exec",
        "exit",
        "getattr",
        "globals",
        "hasattr",
        "help",
        "input",
        "locals",
        "memoryview",
        "open",
        "quit",
        "setattr",
        "type",
        "vars",
    }
)

# str.format can walk attributes through its field syntax.
BLOCKED_ATTRIBUTES = frozenset({"format", "format_map", "gi_frame", "cr_frame", "f_globals"})

SAFE_BUILTINS: dict[str, Any] = {
    "abs": abs,
    "all": all,
    "any": any,
    "bool": bool,
    "chr": chr,
    "dict": dict,
    "divmod": divmod,
    "enumerate": enumerate,
    "filter": filter,
    "float": float,
    "format": format,
    "frozenset": frozenset,
    "int": int,
    "isinstance": isinstance,
    "len": len,
    "list": list,
    "map": map,
    "max": max,
    "min": min,
    "next": next,
    "ord": ord,
    "pow": pow,
    "range": range,
    "repr": repr,
    "reversed": reversed,
    "round": round,
    "set": set,
    "sorted": sorted,
    "str": str,
    "sum": sum,
    "tuple": tuple,
    "zip": zip,
    "True": True,
    "False": False,
    "None": None,
    "Exception": Exception,
    "ValueError": ValueError,
    "TypeError": TypeError,
    "KeyError": KeyError,
    "IndexError": IndexError,
    "RuntimeError": RuntimeError,
    "TimeoutError": TimeoutError,
}


class _Validator(ast.NodeVisitor):
    def _reject(self, node: ast.AST, message: str) -> None:
        line = getattr(node, "lineno", None)
        where = f" (line {line})" if line else ""
        raise ScriptError(f"{message}{where}")

    def visit_Import(self, node: ast.Import) -> None:
        self._reject(node, "Imports are not allowed")

    def visit_ImportFrom(self, node: ast.ImportFrom) -> None:
        self._reject(node, "Imports are not allowed")

    def visit_Global(self, node: ast.Global) -> None:
        self._reject(node, "'global' is not allowed")

    def visit_Nonlocal(self, node: ast.Nonlocal) -> None:
        self._reject(node, "'nonlocal' is not allowed")

    def visit_ClassDef(self, node: ast.ClassDef) -> None:
        self._reject(node, "Class definitions are not allowed")

    def visit_Yield(self, node: ast.Yield) -> None:
        self._reject(node, "Generators are not allowed")

    def visit_YieldFrom(self, node: ast.YieldFrom) -> None:
        self._reject(node, "Generators are not allowed")

    def visit_Name(self, node: ast.Name) -> None:
        if node.id.startswith("_"):
            self._reject(node, f"Name {node.id!r} is not allowed")
        if node.id in BLOCKED_NAMES:
            self._reject(node, f"{node.id}() is not available to scripts")

    def visit_Attribute(self, node: ast.Attribute) -> None:
        if node.attr.startswith("_") or node.attr in BLOCKED_ATTRIBUTES:
            self._reject(node, f"Attribute {node.attr!r} is not allowed")
        self.generic_visit(node)

    def _check_function(self, node: ast.FunctionDef | ast.AsyncFunctionDef) -> None:
        if node.name.startswith("_"):
            self._reject(node, f"Function name {node.name!r} is not allowed")
        for arg in (*node.args.posonlyargs, *node.args.args, *node.args.kwonlyargs):
            if arg.arg.startswith("_"):
                self._reject(node, f"Argument name {arg.arg!r} is not allowed")
        self.generic_visit(node)

    def visit_FunctionDef(self, node: ast.FunctionDef) -> None:
        self._check_function(node)

    def visit_AsyncFunctionDef(self, node: ast.AsyncFunctionDef) -> None:
        self._check_function(node)

    def visit_ExceptHandler(self, node: ast.ExceptHandler) -> None:
        if node.type is None:
            self._reject(node, "Bare 'except:' is not allowed; catch Exception instead")
        if node.name and node.name.startswith("_"):
            self._reject(node, f"Name {node.name!r} is not allowed")
        self.generic_visit(node)

    def visit_Try(self, node: ast.Try) -> None:
        for statement in node.finalbody:
            self._check_finally(statement, in_loop=False)
        self.generic_visit(node)

    visit_TryStar = visit_Try

    def _check_finally(self, node: ast.AST, in_loop: bool) -> None:
        """Reject statements that would jump out of a ``finally`` block."""
        if isinstance(node, (ast.FunctionDef, ast.AsyncFunctionDef, ast.Lambda, ast.ClassDef)):
            return
        if isinstance(node, ast.Return):
            self._reject(node, "'return' inside 'finally' is not allowed")
        if isinstance(node, (ast.Break, ast.Continue)) and not in_loop:
            keyword = "break" if isinstance(node, ast.Break) else "continue"
            self._reject(node, f"'{keyword}' inside 'finally' is not allowed")
        if isinstance(node, (ast.For, ast.AsyncFor, ast.While)):
            for child in node.body:
                self._check_finally(child, in_loop=True)
            for child in node.orelse:
                self._check_finally(child, in_loop)
            return
        for child in ast.iter_child_nodes(node):
            self._check_finally(child, in_loop)


class _Instrumenter(ast.NodeTransformer):
    """Adds deadline checkpoints to loops, function bodies, lambdas and comprehensions."""

    def _checkpoint(self) -> ast.Call:
        return ast.Call(func=ast.Name(id=_CHECKPOINT, ctx=ast.Load()), args=[], keywords=[])

    def _prepend_checkpoint(self, node):
        self.generic_visit(node)
        node.body.insert(0, ast.Expr(value=self._checkpoint()))
        return node

    def visit_While(self, node: ast.While) -> ast.While:
        return self._prepend_checkpoint(node)

    def visit_For(self, node: ast.For) -> ast.For:
        return self._prepend_checkpoint(node)

    def visit_AsyncFor(self, node: ast.AsyncFor) -> ast.AsyncFor:
        return self._prepend_checkpoint(node)

    def visit_FunctionDef(self, node: ast.FunctionDef) -> ast.FunctionDef:
        return self._prepend_checkpoint(node)

    def visit_AsyncFunctionDef(self, node: ast.AsyncFunctionDef) -> ast.AsyncFunctionDef:
        return self._prepend_checkpoint(node)

    def visit_Lambda(self, node: ast.Lambda) -> ast.Lambda:
        self.generic_visit(node)
        # (checkpoint(), body)[1]
        node.body = ast.Subscript(
            value=ast.Tuple(elts=[self._checkpoint(), node.body], ctx=ast.Load()),
            slice=ast.Constant(value=1),
            ctx=ast.Load(),
        )
        return node

    def visit_comprehension(self, node: ast.comprehension) -> ast.comprehension:
        self.generic_visit(node)
        if not node.is_async:
            node.iter = ast.Call(
                func=ast.Name(id=_CHECKPOINT_ITER, ctx=ast.Load()), args=[node.iter], keywords=[]
            )
        return node


class ScriptDeadline(BaseException):
    """Raised inside a script once its time budget is spent.

    Derives from ``BaseException`` so ``except Exception`` in a script
    cannot catch it.
    """


class _Budget:
    """Wall-clock allowance for one run, checked from inside the script."""

    def __init__(self, seconds: float):
        self.deadline = time.monotonic() + seconds

    def check(self) -> None:
        if time.monotonic() >= self.deadline:
            raise ScriptDeadline()

    def iterate(self, iterable: Iterable[Any]) -> Iterator[Any]:
        for item in iterable:
            self.check()
            yield item

    async def sleep(self, ms: float) -> None:
        self.check()
        await sleep(ms)


def validate(source: str) -> ast.Module:
    """Parse and check a script. Returns its syntax tree.

    Raises:
        ScriptError: The script does not parse or uses a forbidden construct.
    """
    try:
        tree = ast.parse(source, filename=SCRIPT_FILENAME, mode="exec")
    except SyntaxError as e:
        raise ScriptError(f"Invalid script: {e.msg} (line {e.lineno})") from e
    _Validator().visit(tree)
    return tree


def to_jsonable(value: Any) -> Any:
    """Coerce a script's return value into something JSON can carry."""
    if value is None or isinstance(value, (bool, int, str)):
        return value
    if isinstance(value, float):
        return value if math.isfinite(value) else None
    if isinstance(value, (list, tuple, set, frozenset)):
        return [to_jsonable(v) for v in value]
    if isinstance(value, dict):
        return {str(k): to_jsonable(v) for k, v in value.items()}
    return str(value)


class ScriptInterpreter:
    """Compiles and runs scripts with a fixed capability set and a timeout."""

    def __init__(self, timeout: float = 240.0):
        self.timeout = timeout

    def compile(self, source: str, budget: _Budget | None = None):
        """Build the script's async entrypoint. Raises ``ScriptError``."""
        budget = budget or _Budget(self.timeout)
        tree = _Instrumenter().visit(validate(source))
        wrapper = ast.parse(_WRAPPER, filename=SCRIPT_FILENAME, mode="exec")
        function = wrapper.body[0]
        function.body = tree.body or [ast.Pass()]
        ast.fix_missing_locations(wrapper)
        try:
            code = compile(wrapper, SCRIPT_FILENAME, "exec")
        except SyntaxError as e:
            raise ScriptError(f"Invalid script: {e.msg} (line {e.lineno})") from e

        namespace: dict[str, Any] = {
            "__builtins__": dict(SAFE_BUILTINS),
            _CHECKPOINT: budget.check,
            _CHECKPOINT_ITER: budget.iterate,
        }
        exec(code, namespace)
        return namespace[_ENTRYPOINT]

    async def run(self, source: str, page: PageCapabilities, console: ScriptConsole) -> Any:
        """Run ``source`` and return its JSON-safe result.

        Exceptions raised by the script propagate unchanged; exceeding the
        timeout raises ``ScriptError``. The call returns once the timeout
        is reached even if the script task has not yet finished unwinding.
        """
        budget = _Budget(self.timeout)
        entrypoint = self.compile(source, budget)
        task = asyncio.ensure_future(entrypoint(page, console, budget.sleep))
        try:
            done, _ = await asyncio.wait({task}, timeout=self.timeout)
        except asyncio.CancelledError:
            task.cancel()
            raise

        if not done:
            task.cancel()
            # One loop turn lets an ordinary await unwind.
            await asyncio.sleep(0)
            if not task.done():
                logger.warning("Script ignored cancellation at %gs, abandoned", self.timeout)
            task.add_done_callback(_discard_outcome)
            raise ScriptError(self._time_limit_message())
        try:
            result = task.result()
        except ScriptDeadline as e:
            raise ScriptError(self._time_limit_message()) from e
        return to_jsonable(result)

    def _time_limit_message(self) -> str:
        return f"Script exceeded the {self.timeout:g}s time limit"


def _discard_outcome(task: asyncio.Future) -> None:
    if not task.cancelled() and task.exception() is not None:
        logger.debug("Abandoned script ended with %r", task.exception())
