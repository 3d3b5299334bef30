"""Pattern definition documents: Markdown with a YAML header, or plain YAML.

A Markdown definition looks like:

    ---
    id: manual-role-check
    title: Manual role check instead of a policy module
    severity: critical
    ...
    ---

    ## Description
    ...
    ## Lexical
    ```regex
    role\\s*==\\s*"admin"
    ```
    ## Structural
    ```yaml
    node: function
    ```
    ## Semantic
    Prompt text for the judgment model.
    ## Fix
    ...

This module only turns documents into raw mappings; validation lives in the
registry so YAML files and inline mappings share it.
"""

from __future__ import annotations

import re
from pathlib import Path
from typing import Any

import yaml

from patternreview.errors import RegistryError

_FRONT_MATTER = re.compile(r"\A---[ \t]*\n(.*?)\n---[ \t]*(?:\n|\Z)", re.DOTALL)
_SECTION = re.compile(r"^##[ \t]+(.+?)[ \t]*$", re.MULTILINE)
_FENCE = re.compile(r"^```[ \t]*([\w-]*)[ \t]*\n(.*?)^```[ \t]*$", re.MULTILINE | re.DOTALL)

# Free-form sections copied verbatim into the mapping
_TEXT_SECTIONS = {"description": "description", "examples": "examples", "fix": "fix"}


def load_pattern_file(path: Path) -> dict[str, Any]:
    """Read one definition file into a raw mapping.

    Raises:
        RegistryError: unreadable file or malformed document
    """
    try:
        text = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        raise RegistryError(f"Cannot read pattern file: {e}", source=str(path), cause=e) from e

    if path.suffix in (".yaml", ".yml"):
        data = _safe_yaml(text, str(path))
        if not isinstance(data, dict):
            raise RegistryError("Pattern YAML must be a mapping", source=str(path))
        return data
    return parse_pattern_document(text, source=str(path))


def parse_pattern_document(text: str, source: str = "<string>") -> dict[str, Any]:
    """Split a Markdown definition into header fields and rule bodies."""
    text = text.lstrip("\ufeff")
    match = _FRONT_MATTER.match(text)
    if not match:
        raise RegistryError("Missing YAML header (--- ... ---)", source=source)

    header = _safe_yaml(match.group(1), source)
    if not isinstance(header, dict):
        raise RegistryError("Pattern header must be a mapping", source=source)

    data: dict[str, Any] = dict(header)
    sections = _split_sections(text[match.end():])

    for name, body in sections.items():
        if name in _TEXT_SECTIONS:
            data.setdefault(_TEXT_SECTIONS[name], body.strip())
            if name == "examples":
                bad, good = _split_examples(body)
                if bad:
                    data.setdefault("bad_example", bad)
                if good:
                    data.setdefault("good_example", good)
        elif name == "lexical":
            rules = _as_rule_list(data.get("lexical"))
            rules.extend(_lexical_rules_from_section(body, source))
            data["lexical"] = rules
        elif name == "structural":
            fences = _fences(body)
            yaml_blocks = [b for lang, b in fences if lang in ("yaml", "yml", "")]
            if yaml_blocks and "structural" not in data:
                data["structural"] = _safe_yaml(yaml_blocks[0], source)
        elif name == "semantic":
            prompt = body.strip()
            if prompt and "semantic" not in data:
                data["semantic"] = prompt

    return data


def _split_sections(body: str) -> dict[str, str]:
    sections: dict[str, str] = {}
    headings = list(_SECTION.finditer(body))
    for i, heading in enumerate(headings):
        end = headings[i + 1].start() if i + 1 < len(headings) else len(body)
        name = heading.group(1).strip().lower()
        sections[name] = body[heading.end():end]
    return sections


def _fences(body: str) -> list[tuple[str, str]]:
    return [(m.group(1).lower(), m.group(2)) for m in _FENCE.finditer(body)]


def _lexical_rules_from_section(body: str, source: str) -> list[Any]:
    rules: list[Any] = []
    for lang, block in _fences(body):
        if lang in ("yaml", "yml"):
            parsed = _safe_yaml(block, source)
            if isinstance(parsed, list):
                rules.extend(parsed)
            elif parsed is not None:
                rules.append(parsed)
        else:
            # One regex per non-empty line of a regex/plain fence
            rules.extend(
                {"pattern": line} for line in block.splitlines() if line.strip()
            )
    return rules


def _safe_yaml(text: str, source: str) -> Any:
    try:
        return yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise RegistryError(f"Invalid YAML: {e}", source=source, cause=e) from e


def _as_rule_list(value: Any) -> list[Any]:
    # A header may hold a single rule; the registry rejects anything malformed
    if value is None or value == "":
        return []
    return list(value) if isinstance(value, list) else [value]


def _split_examples(body: str) -> tuple[str, str]:
    """Pick the bad and good code fences out of an Examples section.

    A fence is labelled by the nearest "Bad"/"Good" text above it. Without
    labels the first fence is the bad example and the second the good one.
    """
    bad = good = ""
    unlabelled: list[str] = []
    last_end = 0
    for m in _FENCE.finditer(body):
        label = body[last_end:m.start()].lower()
        last_end = m.end()
        code = m.group(2).rstrip("\n")
        if "bad" in label and not bad:
            bad = code
        elif "good" in label and not good:
            good = code
        else:
            unlabelled.append(code)
    if not bad and not good and unlabelled:
        bad = unlabelled[0]
        good = unlabelled[1] if len(unlabelled) > 1 else ""
    return bad, good
