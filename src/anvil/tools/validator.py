"""Argument validation for tool invocations.

Every argument the model supplies is checked against the tool's declared
parameters before anything is spawned. A valid call is turned into a
discrete argv list; no shell ever sees the values.
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from anvil.errors import ValidationRejected
from anvil.tools.definitions import ParameterSpec, ParamKind, ToolDefinition


@dataclass(frozen=True)
class ValidatedCall:
    """argv (without the program) plus optional stdin text."""

    argv: tuple[str, ...]
    stdin: str | None = None


def validate(
    definition: ToolDefinition,
    arguments: Mapping[str, Any],
    project_root: Path,
) -> ValidatedCall:
    """Check *arguments* against *definition* and build the argv.

    Args:
        definition: The tool being invoked.
        arguments: Raw ``name -> value`` mapping from the model.
        project_root: Directory PATHS arguments are resolved against.

    Returns:
        ValidatedCall with argv in parameter declaration order, after the
        tool's base_args.

    Raises:
        ValidationRejected: With a message suitable for returning to the model.
    """
    known = {p.name for p in definition.parameters}
    unknown = sorted(set(arguments) - known)
    if unknown:
        raise ValidationRejected(
            f"Unknown argument(s) for '{definition.name}': {', '.join(unknown)}. "
            f"Known parameters: {', '.join(p.name for p in definition.parameters) or '(none)'}"
        )

    root = project_root.resolve()
    allowed_roots = [(root / r).resolve() for r in definition.path_roots]

    argv: list[str] = list(definition.base_args)
    stdin: str | None = None

    for spec in definition.parameters:
        value = arguments.get(spec.name)
        if value is None or value == "":
            if spec.required:
                raise ValidationRejected(
                    f"Missing required argument '{spec.name}' for '{definition.name}'"
                )
            continue
        value = _check_text(spec, value)

        if spec.kind is ParamKind.STDIN:
            stdin = value
            continue

        if spec.kind is ParamKind.STRING:
            rendered = [_check_string(spec, value)]
        elif spec.kind is ParamKind.CHOICE:
            rendered = [_check_choice(spec, value)]
        elif spec.kind is ParamKind.OPTIONS:
            rendered = _check_options(spec, value)
        elif spec.kind is ParamKind.PATHS:
            rendered = _check_paths(spec, value, root, allowed_roots)
        else:
            raise ValidationRejected(f"Unsupported parameter kind: {spec.kind}")

        if spec.flag:
            argv.append(spec.flag)
        if spec.separator:
            argv.append("--")
        argv.extend(rendered)

    return ValidatedCall(argv=tuple(argv), stdin=stdin)


# ------------------------------------------------------------------
# Per-kind checks
# ------------------------------------------------------------------


def _check_text(spec: ParameterSpec, value: Any) -> str:
    if not isinstance(value, str):
        raise ValidationRejected(
            f"Argument '{spec.name}' must be a string, got {type(value).__name__}"
        )
    if "\x00" in value:
        raise ValidationRejected(f"Argument '{spec.name}' contains a NUL byte")
    if len(value) > spec.max_length:
        raise ValidationRejected(
            f"Argument '{spec.name}' is too long ({len(value)} > {spec.max_length} characters)"
        )
    return value


def _check_string(spec: ParameterSpec, value: str) -> str:
    if spec.pattern and re.fullmatch(spec.pattern, value) is None:
        raise ValidationRejected(
            f"Argument '{spec.name}' does not match the required pattern {spec.pattern!r}"
        )
    return value


def _check_choice(spec: ParameterSpec, value: str) -> str:
    if value not in spec.allowed_values:
        raise ValidationRejected(
            f"Invalid value '{value}' for '{spec.name}'. "
            f"Valid values: {', '.join(spec.allowed_values)}"
        )
    return value


def _check_options(spec: ParameterSpec, value: str) -> list[str]:
    options = [o.strip() for o in value.split(",")]
    if spec.max_items is not None and len(options) > spec.max_items:
        raise ValidationRejected(
            f"Too many options for '{spec.name}' ({len(options)} > {spec.max_items})"
        )
    for option in options:
        if option not in spec.allowed_values:
            raise ValidationRejected(
                f"Invalid option '{option}'. Valid options: {', '.join(spec.allowed_values)}"
            )
    return options


def _check_paths(
    spec: ParameterSpec,
    value: str,
    root: Path,
    allowed_roots: list[Path],
) -> list[str]:
    items = [p.strip() for p in value.split(",")]
    if spec.max_items is not None and len(items) > spec.max_items:
        raise ValidationRejected(
            f"Too many paths for '{spec.name}' ({len(items)} > {spec.max_items})"
        )

    rendered: list[str] = []
    for item in items:
        if not item:
            raise ValidationRejected(f"Empty path in '{spec.name}'")
        # An absolute item replaces root here; containment is checked below.
        resolved = (root / item).resolve()
        if not any(resolved == r or resolved.is_relative_to(r) for r in allowed_roots):
            raise ValidationRejected(
                f"Path '{item}' is outside the permitted directories"
            )
        if spec.must_exist and not resolved.exists():
            raise ValidationRejected(f"Path '{item}' does not exist")
        rendered.append(_render_path(resolved, root))
    return rendered


def _render_path(resolved: Path, root: Path) -> str:
    relative = resolved.relative_to(root).as_posix() if resolved != root else "."
    if relative.startswith("-"):
        relative = f"./{relative}"
    return relative
