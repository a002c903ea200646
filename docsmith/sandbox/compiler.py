"""Restricted compilation of generation artifacts."""

from __future__ import annotations

import ast
import operator
from collections.abc import Callable
from dataclasses import dataclass
from types import CodeType
from typing import Any

from RestrictedPython import compile_restricted, limited_builtins, safe_builtins, utility_builtins
from RestrictedPython.Eval import default_guarded_getitem, default_guarded_getiter
from RestrictedPython.Guards import full_write_guard, guarded_iter_unpack_sequence, guarded_unpack_sequence, safer_getattr
from RestrictedPython.PrintCollector import PrintCollector

from docsmith.core.errors import ContractViolation
from docsmith.sandbox.contract import check_entry_point

ARTIFACT_FILENAME = "<generator>"

_EXTRA_BUILTINS: dict[str, Any] = {
  "dict": dict,
  "list": list,
  "set": set,
  "enumerate": enumerate,
  "min": min,
  "max": max,
  "sum": sum,
  "any": any,
  "all": all,
  "map": map,
  "filter": filter,
  "reversed": reversed,
}

_INPLACE_OPERATORS: dict[str, Callable[[Any, Any], Any]] = {
  "+=": operator.iadd,
  "-=": operator.isub,
  "*=": operator.imul,
  "/=": operator.itruediv,
  "//=": operator.ifloordiv,
  "%=": operator.imod,
  "**=": operator.ipow,
  "<<=": operator.ilshift,
  ">>=": operator.irshift,
  "&=": operator.iand,
  "|=": operator.ior,
  "^=": operator.ixor,
}


def _inplacevar(op: str, target: Any, value: Any) -> Any:
  handler = _INPLACE_OPERATORS.get(op)
  if handler is None:
    raise SyntaxError(f"Unsupported in-place operator {op}")
  return handler(target, value)


def _sandbox_builtins() -> dict[str, Any]:
  builtins: dict[str, Any] = {}
  builtins.update(safe_builtins)
  builtins.update(limited_builtins)
  builtins.update(utility_builtins)
  builtins.update(_EXTRA_BUILTINS)
  return builtins


class _LogPrintCollector(PrintCollector):
  """PrintCollector that also forwards complete lines to a log sink."""

  def __init__(self, sink: Callable[[str], None], _getattr_: Any = None) -> None:
    super().__init__(_getattr_)
    self._sink = sink
    self._pending = ""

  def write(self, text: str) -> None:
    super().write(text)
    self._pending += text
    while "\n" in self._pending:
      line, self._pending = self._pending.split("\n", 1)
      self._sink(f"print: {line}")


@dataclass(frozen=True)
class CompiledArtifact:
  """Restricted bytecode plus the source it was built from."""

  code: CodeType
  source: str

  def new_namespace(self, print_sink: Callable[[str], None]) -> dict[str, Any]:
    """Fresh globals for one execution; nothing leaks between runs."""

    def _print_factory(_getattr_: Any = None) -> _LogPrintCollector:
      return _LogPrintCollector(print_sink, _getattr_)

    return {
      "__builtins__": _sandbox_builtins(),
      "__name__": "generator",
      "__metaclass__": type,
      "_getattr_": safer_getattr,
      "_getitem_": default_guarded_getitem,
      "_getiter_": default_guarded_getiter,
      "_write_": full_write_guard,
      "_iter_unpack_sequence_": guarded_iter_unpack_sequence,
      "_unpack_sequence_": guarded_unpack_sequence,
      "_inplacevar_": _inplacevar,
      "_print_": _print_factory,
    }


def compile_artifact(source: str) -> CompiledArtifact:
  """Check the entry-point contract and compile under RestrictedPython.

  Every rejection, including imports and underscore-prefixed names, is a ContractViolation.
  """
  check_entry_point(source)

  tree = ast.parse(source)
  for node in ast.walk(tree):
    if isinstance(node, ast.Import | ast.ImportFrom):
      raise ContractViolation(f"Imports are not available to generators (line {node.lineno}); use the toolkit instead.")

  try:
    code = compile_restricted(source, filename=ARTIFACT_FILENAME, mode="exec")
  except SyntaxError as exc:
    raise ContractViolation(f"Generator rejected by the restricted compiler: {exc}") from exc
  if code is None:
    raise ContractViolation("Generator rejected by the restricted compiler.")
  return CompiledArtifact(code=code, source=source)
