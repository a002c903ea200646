"""Structural check for the artifact entry point."""

from __future__ import annotations

import ast

from docsmith.core.errors import ContractViolation

ENTRY_POINT = "generate"
ENTRY_POINT_ARITY = 3


def check_entry_point(source: str) -> None:
  """Require exactly one module-level `def generate(toolkit, builder, context)`.

  Raises ContractViolation describing the first problem found.
  """
  try:
    tree = ast.parse(source)
  except SyntaxError as exc:
    raise ContractViolation(f"Artifact does not parse: {exc.msg} (line {exc.lineno})") from exc

  candidates = [node for node in tree.body if isinstance(node, ast.FunctionDef | ast.AsyncFunctionDef) and node.name == ENTRY_POINT]
  if not candidates:
    raise ContractViolation(f"Artifact defines no module-level `{ENTRY_POINT}` function.")
  if len(candidates) > 1:
    raise ContractViolation(f"Artifact defines `{ENTRY_POINT}` {len(candidates)} times; exactly one definition is required.")

  node = candidates[0]
  if isinstance(node, ast.AsyncFunctionDef):
    raise ContractViolation(f"`{ENTRY_POINT}` must be a plain function, not `async def`.")

  args = node.args
  positional = [*args.posonlyargs, *args.args]
  if args.vararg is not None or args.kwarg is not None or args.kwonlyargs:
    raise ContractViolation(f"`{ENTRY_POINT}` must take exactly {ENTRY_POINT_ARITY} positional parameters and nothing else.")
  if len(positional) != ENTRY_POINT_ARITY:
    raise ContractViolation(f"`{ENTRY_POINT}` takes {len(positional)} parameters; expected {ENTRY_POINT_ARITY} (toolkit, builder, context).")
  if args.defaults:
    raise ContractViolation(f"`{ENTRY_POINT}` parameters must not have defaults.")

  # A later module-level rebinding would silently replace the checked function.
  for statement in tree.body:
    if statement is node:
      continue
    for target in _assigned_names(statement):
      if target == ENTRY_POINT:
        raise ContractViolation(f"`{ENTRY_POINT}` is rebound at module level (line {statement.lineno}).")


def _assigned_names(statement: ast.stmt) -> list[str]:
  if isinstance(statement, ast.Assign):
    return [name.id for target in statement.targets for name in ast.walk(target) if isinstance(name, ast.Name)]
  if isinstance(statement, ast.AnnAssign | ast.AugAssign) and isinstance(statement.target, ast.Name):
    return [statement.target.id]
  if isinstance(statement, ast.ClassDef):
    return [statement.name]
  return []
