"""Language-neutral syntax trees for the structural strategy.

Callers either attach a pre-parsed tree to a ChangeSetFile (SyntaxNode.from_dict
accepts the JSON shape an external parser would emit) or rely on the built-in
Python provider, which derives a tree from the standard library `ast` module.
Anything else is StructuralUnavailable.
"""

from __future__ import annotations

import ast
from collections.abc import Iterator
from dataclasses import dataclass, field
from typing import Any, Optional

from patternreview.errors import StructuralUnavailable
from patternreview.models import ChangeSetFile


@dataclass(frozen=True)
class SyntaxNode:
    """One node of a simplified syntax tree.

    kind is one of module, class, function, conditional, loop, try, call
    (other kinds are allowed for externally supplied trees).
    """

    kind: str
    line: int
    name: str = ""
    end_line: Optional[int] = None
    branches: int = 0
    literals: frozenset[str] = frozenset()
    text: str = ""
    children: tuple["SyntaxNode", ...] = ()

    def walk(self) -> Iterator["SyntaxNode"]:
        """Pre-order traversal including self."""
        stack = [self]
        while stack:
            node = stack.pop()
            yield node
            stack.extend(reversed(node.children))

    def descendants(self) -> Iterator["SyntaxNode"]:
        for child in self.children:
            yield from child.walk()

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SyntaxNode:
        """Build a tree from nested mappings.

        Raises:
            StructuralUnavailable: if the mapping is not a well-formed tree
        """
        if not isinstance(data, dict) or "kind" not in data:
            raise StructuralUnavailable("Structural node must be a mapping with a 'kind'")
        try:
            return cls(
                kind=str(data["kind"]),
                line=int(data.get("line", 1)),
                name=str(data.get("name") or ""),
                end_line=int(data["end_line"]) if data.get("end_line") is not None else None,
                branches=int(data.get("branches", 0)),
                literals=frozenset(str(v) for v in data.get("literals", ())),
                text=str(data.get("text") or ""),
                children=tuple(cls.from_dict(c) for c in data.get("children", ())),
            )
        except (TypeError, ValueError) as e:
            raise StructuralUnavailable(f"Malformed structural node: {e}", cause=e) from e


# ── Python provider ──────────────────────────────────────────────────────────


def build_python_structure(source: str) -> SyntaxNode:
    """Parse Python source into a SyntaxNode tree.

    Raises:
        StructuralUnavailable: if the source does not parse
    """
    try:
        tree = ast.parse(source)
    except (SyntaxError, ValueError) as e:
        raise StructuralUnavailable(f"Python source does not parse: {e}", cause=e) from e

    lines = source.splitlines()
    children = tuple(_PythonTreeBuilder(lines).build_children(tree.body))
    return SyntaxNode(kind="module", line=1, end_line=len(lines) or 1, children=children)


class _PythonTreeBuilder:
    def __init__(self, lines: list[str]) -> None:
        self.lines = lines

    def _text(self, node: ast.AST) -> str:
        idx = getattr(node, "lineno", 1) - 1
        return self.lines[idx].strip() if 0 <= idx < len(self.lines) else ""

    def build_children(self, nodes: list[ast.AST]) -> list[SyntaxNode]:
        out: list[SyntaxNode] = []
        for node in nodes:
            out.extend(self.build(node))
        return out

    def build(self, node: ast.AST) -> list[SyntaxNode]:
        """Convert one ast node; nodes without a counterpart pass their children up."""
        if isinstance(node, (ast.FunctionDef, ast.AsyncFunctionDef)):
            return [self._node("function", node, name=node.name, body=node.body)]
        if isinstance(node, ast.ClassDef):
            return [self._node("class", node, name=node.name, body=node.body)]
        if isinstance(node, ast.If):
            return [self._conditional(node)]
        if isinstance(node, ast.Match):
            literals = frozenset(
                c.pattern.value.value
                for c in node.cases
                if isinstance(c.pattern, ast.MatchValue)
                and isinstance(c.pattern.value, ast.Constant)
                and isinstance(c.pattern.value.value, str)
            )
            body = [stmt for case in node.cases for stmt in case.body]
            return [
                self._node(
                    "conditional", node, body=body,
                    branches=len(node.cases), literals=literals,
                )
            ]
        if isinstance(node, (ast.For, ast.AsyncFor, ast.While)):
            return [self._node("loop", node, body=list(ast.iter_child_nodes(node)))]
        if isinstance(node, ast.Try):
            body = node.body + [s for h in node.handlers for s in h.body] + node.orelse + node.finalbody
            return [self._node("try", node, body=body)]
        if isinstance(node, ast.Call):
            return [
                self._node(
                    "call", node,
                    name=_dotted_name(node.func),
                    body=list(node.args) + [kw.value for kw in node.keywords],
                )
            ]
        return self.build_children(list(ast.iter_child_nodes(node)))

    def _node(
        self,
        kind: str,
        node: ast.AST,
        name: str = "",
        body: Optional[list[ast.AST]] = None,
        branches: int = 0,
        literals: frozenset[str] = frozenset(),
    ) -> SyntaxNode:
        return SyntaxNode(
            kind=kind,
            line=getattr(node, "lineno", 1),
            end_line=getattr(node, "end_lineno", None),
            name=name,
            branches=branches,
            literals=literals,
            text=self._text(node),
            children=tuple(self.build_children(body or [])),
        )

    def _conditional(self, node: ast.If) -> SyntaxNode:
        # Flatten an if/elif/else chain into one node
        chain = [node]
        while len(chain[-1].orelse) == 1 and isinstance(chain[-1].orelse[0], ast.If):
            chain.append(chain[-1].orelse[0])
        has_else = bool(chain[-1].orelse)

        literals: set[str] = set()
        body: list[ast.AST] = []
        for branch in chain:
            literals.update(_compared_literals(branch.test))
            body.append(branch.test)
            body.extend(branch.body)
        body.extend(chain[-1].orelse)

        return self._node(
            "conditional", node, body=body,
            branches=len(chain) + (1 if has_else else 0),
            literals=frozenset(literals),
        )


def _compared_literals(test: ast.AST) -> set[str]:
    found: set[str] = set()
    for sub in ast.walk(test):
        if isinstance(sub, ast.Compare):
            for operand in [sub.left, *sub.comparators]:
                if isinstance(operand, ast.Constant) and isinstance(operand.value, str):
                    found.add(operand.value)
                elif isinstance(operand, (ast.Tuple, ast.List, ast.Set)):
                    found.update(
                        e.value for e in operand.elts
                        if isinstance(e, ast.Constant) and isinstance(e.value, str)
                    )
    return found


def _dotted_name(node: ast.AST) -> str:
    if isinstance(node, ast.Name):
        return node.id
    if isinstance(node, ast.Attribute):
        base = _dotted_name(node.value)
        return f"{base}.{node.attr}" if base else node.attr
    return ""


# ── Provider ─────────────────────────────────────────────────────────────────


def structure_for(file: ChangeSetFile) -> SyntaxNode:
    """Return the file's syntax tree, building it for Python sources.

    Raises:
        StructuralUnavailable: no tree attached and no provider for the language
    """
    if file.structure is not None:
        return file.structure
    if file.path.endswith(".py"):
        return build_python_structure(file.content)
    raise StructuralUnavailable(f"No structural representation for {file.path}")
