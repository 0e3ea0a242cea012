"""
Line-based reversible patches between two text snapshots.

A patch is compact JSON::

    {"v": 1, "base_lines": N, "ops": [[i1, i2, ["line\n", ...]], ...]}

Each op replaces ``base[i1:i2]`` with the given lines; unchanged runs are
implicit. Lines keep their terminators, so applying a patch reproduces the
target byte-for-byte.
"""

from __future__ import annotations

import difflib
import json

from edithistory.core.errors import StateConsistencyError

PATCH_VERSION = 1


class DiffService:
    @staticmethod
    def create_diff(base: str, target: str, label: str | None = None) -> str:
        base_lines = base.splitlines(keepends=True)
        target_lines = target.splitlines(keepends=True)
        matcher = difflib.SequenceMatcher(None, base_lines, target_lines, autojunk=False)
        ops = [
            [i1, i2, target_lines[j1:j2]]
            for tag, i1, i2, j1, j2 in matcher.get_opcodes()
            if tag != "equal"
        ]
        patch: dict = {"v": PATCH_VERSION, "base_lines": len(base_lines), "ops": ops}
        if label:
            patch["label"] = label
        return json.dumps(patch, ensure_ascii=False, separators=(",", ":"))

    @staticmethod
    def apply_diff(base: str, patch: str) -> str:
        try:
            data = json.loads(patch)
            version = data["v"]
            expected_lines = data["base_lines"]
            ops = data["ops"]
        except (ValueError, KeyError, TypeError) as exc:
            raise StateConsistencyError(f"Patch is malformed: {exc}") from exc

        if version != PATCH_VERSION:
            raise StateConsistencyError(f"Unsupported patch version: {version}")

        base_lines = base.splitlines(keepends=True)
        if len(base_lines) != expected_lines:
            raise StateConsistencyError(
                "Patch application failed: content mismatch or corruption",
                {"expected_lines": expected_lines, "actual_lines": len(base_lines)},
            )

        out: list[str] = []
        pos = 0
        for op in ops:
            try:
                i1, i2, lines = op
            except (ValueError, TypeError) as exc:
                raise StateConsistencyError(f"Patch op is malformed: {op!r}") from exc
            if not (isinstance(i1, int) and isinstance(i2, int) and isinstance(lines, list)):
                raise StateConsistencyError(f"Patch op is malformed: {op!r}")
            if i1 < pos or i2 < i1 or i2 > len(base_lines):
                raise StateConsistencyError(
                    "Patch application failed: op out of range",
                    {"op_range": [i1, i2], "position": pos, "base_lines": len(base_lines)},
                )
            out.extend(base_lines[pos:i1])
            out.extend(lines)
            pos = i2
        out.extend(base_lines[pos:])
        return "".join(out)

    @staticmethod
    def calculate_diff_size(patch: str) -> int:
        return len(patch.encode("utf-8"))
