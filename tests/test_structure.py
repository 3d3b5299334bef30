"""Tests for syntax trees and the Python structure provider."""

from __future__ import annotations

import pytest

from patternreview.errors import StructuralUnavailable
from patternreview.models import ChangeSetFile
from patternreview.structure import SyntaxNode, build_python_structure, structure_for

SOURCE = '''\
import logging


class Service:
    def run(self, items):
        for item in items:
            try:
                self.repo.save(item)
            except ValueError:
                logging.warning("bad item")

    def route(self, command):
        match command:
            case "start":
                return 1
            case "stop":
                return 2
            case _:
                return 0
'''


def kinds(node: SyntaxNode) -> list[tuple[str, str, int]]:
    return [(n.kind, n.name, n.line) for n in node.walk()]


def test_python_tree_shape():
    tree = build_python_structure(SOURCE)
    walked = kinds(tree)
    assert walked[0] == ("module", "", 1)
    assert ("class", "Service", 4) in walked
    assert ("function", "run", 5) in walked
    assert ("loop", "", 6) in walked
    assert ("try", "", 7) in walked
    assert ("call", "self.repo.save", 8) in walked
    assert ("call", "logging.warning", 10) in walked


def test_match_statement_is_a_conditional():
    tree = build_python_structure(SOURCE)
    [cond] = [n for n in tree.walk() if n.kind == "conditional"]
    assert cond.line == 13
    assert cond.branches == 3
    assert cond.literals == frozenset({"start", "stop"})


def test_membership_test_literals():
    tree = build_python_structure('if role in ("admin", "owner"):\n    pass\n')
    [cond] = [n for n in tree.walk() if n.kind == "conditional"]
    assert cond.literals == frozenset({"admin", "owner"})
    assert cond.branches == 1


def test_descendants_excludes_self():
    tree = build_python_structure(SOURCE)
    cls = next(n for n in tree.walk() if n.kind == "class")
    assert cls not in list(cls.descendants())
    assert any(n.name == "route" for n in cls.descendants())


def test_from_dict_round_trip_of_nested_nodes():
    node = SyntaxNode.from_dict(
        {
            "kind": "function",
            "name": "index",
            "line": 3,
            "end_line": 9,
            "literals": ["admin"],
            "children": [{"kind": "call", "line": 4, "name": "Repo.all"}],
        }
    )
    assert node.end_line == 9
    assert node.literals == frozenset({"admin"})
    assert node.children[0].name == "Repo.all"


@pytest.mark.parametrize(
    "data",
    [
        {"line": 1},
        "function",
        {"kind": "call", "line": "seven"},
    ],
)
def test_from_dict_rejects_malformed_trees(data):
    with pytest.raises(StructuralUnavailable):
        SyntaxNode.from_dict(data)


def test_structure_for_prefers_attached_tree():
    tree = SyntaxNode(kind="module", line=1)
    f = ChangeSetFile("a.py", "this is not python", structure=tree)
    assert structure_for(f) is tree


def test_structure_for_unknown_language():
    with pytest.raises(StructuralUnavailable, match="No structural representation"):
        structure_for(ChangeSetFile("lib/a.ex", "defmodule A do\nend\n"))
