from __future__ import annotations

import ast
import json
import re
from pathlib import Path
from typing import Dict, List, Optional, Union


PathLike = Union[str, Path]

# Quoted entries of a dict repr such as `{0: 'person', 1: "yellow_lady's_slipper"}`.
_NAMES_RE = re.compile(r"""(['"])([-()\w '"]+?)\1\s*(?=[,}\]])""")


def _dense(names: Dict[int, str], source: str) -> List[str]:
    if not names:
        return []
    expected = list(range(len(names)))
    if sorted(names) != expected:
        raise ValueError(f"{source}: class ids must be contiguous from 0, got {sorted(names)}")
    return [names[i] for i in expected]


def _parse_yaml_names(lines: List[str], source: str) -> List[str]:
    """
    Parse the `names:` block of an Ultralytics-style metadata yaml.

    Both layouts are accepted:

        names:            names:
          0: person         - person
          1: bicycle        - bicycle

    Only this block is read, so no PyYAML dependency is needed.
    """

    mapping: Dict[int, str] = {}
    listed: List[str] = []
    in_names = False

    for raw in lines:
        line = raw.strip()
        if not line or line.startswith("#"):
            continue
        if line == "names:":
            in_names = True
            continue
        if not in_names:
            continue
        # A new top-level key ends the block.
        if not raw[:1].isspace() and not line.startswith("-"):
            break

        if line.startswith("-"):
            listed.append(line[1:].strip().strip("'").strip('"'))
            continue

        # Parse "id: label"
        if ":" not in line:
            continue
        left, right = line.split(":", 1)
        left = left.strip()
        right = right.strip().strip("'").strip('"')
        if not left.isdigit():
            continue
        mapping[int(left)] = right

    if listed and mapping:
        raise ValueError(f"{source}: mixes list and mapping entries under names:")
    return listed or _dense(mapping, source)


def load_class_names(path: PathLike) -> List[str]:
    """
    Load an ordered class list from disk.

    Supported formats:
        .yaml/.yml  `names:` block (mapping of id -> name, or a list)
        .json       ["person", ...] or YOLO-World prompt lists [["person"], ...]
        .txt        one class per line, blank lines and `#` comments ignored
    """

    p = Path(path)
    if not p.exists():
        raise FileNotFoundError(f"Class names file not found: {p}")
    suffix = p.suffix.lower()
    text = p.read_text(encoding="utf-8")

    if suffix in {".yaml", ".yml"}:
        return _parse_yaml_names(text.splitlines(), str(p))

    if suffix == ".json":
        try:
            payload = json.loads(text)
        except json.JSONDecodeError as exc:
            raise ValueError(f"Invalid class names JSON: {p}") from exc
        if isinstance(payload, dict) and "names" in payload:
            payload = payload["names"]
        if not isinstance(payload, list):
            raise ValueError(f"{p}: expected a JSON list of class names")
        names: List[str] = []
        for item in payload:
            # YOLO-World text prompt files wrap each class in its own list.
            if isinstance(item, list) and item and isinstance(item[0], str):
                names.append(item[0])
            elif isinstance(item, str):
                names.append(item)
            else:
                raise ValueError(f"{p}: unsupported class entry {item!r}")
        return names

    if suffix == ".txt":
        return [ln.strip() for ln in text.splitlines() if ln.strip() and not ln.strip().startswith("#")]

    raise ValueError(f"Unsupported class names format '{suffix}' ({p})")


def parse_names_metadata(value: Optional[str]) -> Optional[List[str]]:
    """
    Parse the `names` entry Ultralytics writes into ONNX model metadata.

    The value is a Python dict repr, e.g. `{0: 'person', 1: 'bicycle'}`.
    Returns None when the value is missing or cannot be read.
    """

    if not value:
        return None
    try:
        parsed = ast.literal_eval(value)
    except (ValueError, SyntaxError):
        parsed = None

    if isinstance(parsed, dict):
        try:
            return _dense({int(k): str(v) for k, v in parsed.items()}, "model metadata")
        except ValueError:
            return None
    if isinstance(parsed, (list, tuple)):
        return [str(v) for v in parsed]

    found = [m.group(2) for m in _NAMES_RE.finditer(value)]
    return found or None
