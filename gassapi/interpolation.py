"""Resolution of ``{{scope.path}}`` references against session state.

A reference is a double-curly-brace delimited, dot-separated path whose first
segment names a scope:

* ``input``   flow inputs
* ``env``     environment variables
* ``runtime`` runtime variables set while a flow runs
* ``config``  configuration values
* ``header``  headers of the step currently executing
* ``step``    raw outputs of earlier steps, e.g. ``step.login.body.token``

References that cannot be resolved are left in the output verbatim.
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from .exceptions import UnresolvedReferenceError
from .session import Scope, SessionState

logger = logging.getLogger(__name__)

VARIABLE_PATTERN = re.compile(r"\{\{([^}]+)\}\}")

SCOPE_ALIASES = {"headers": Scope.HEADER}

_SCOPE_LABELS = {
    Scope.INPUT: "Input field",
    Scope.ENV: "Environment variable",
    Scope.RUNTIME: "Runtime variable",
    Scope.CONFIG: "Configuration value",
    Scope.HEADER: "Header",
    Scope.STEP: "Step output",
}


@dataclass
class InterpolationContext:
    """Transient view used while materializing one step."""

    state: SessionState
    current_step_id: Optional[str] = None
    debug: bool = False


def parse_scope(name: str) -> Optional[Scope]:
    """Map a reference's first segment to a :class:`Scope`, if recognized."""
    if name in SCOPE_ALIASES:
        return SCOPE_ALIASES[name]
    try:
        return Scope(name)
    except ValueError:
        return None


def strip_braces(reference: str) -> str:
    match = VARIABLE_PATTERN.fullmatch(reference.strip())
    return (match.group(1) if match else reference).strip()


def navigate_path(obj: Any, path: Sequence[str]) -> Any:
    """Walk ``path`` through nested mappings and sequences.

    Raises:
        KeyError: If a segment is missing.
    """
    current = obj
    for part in path:
        if isinstance(current, Mapping) and part in current:
            current = current[part]
        elif (
            isinstance(current, Sequence)
            and not isinstance(current, (str, bytes))
            and part.isdigit()
            and int(part) < len(current)
        ):
            current = current[int(part)]
        elif hasattr(current, "model_dump") and part in type(current).model_fields:
            current = getattr(current, part)
        else:
            raise KeyError(part)
    return current


def format_value(value: Any) -> str:
    """Render a resolved value for textual substitution."""
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    return json.dumps(value, default=str)


class StatefulInterpolator:
    """Interpolate variable references using a session's scoped state."""

    @staticmethod
    def resolve_reference(reference: str, context: InterpolationContext) -> Any:
        """Return the value a single reference points at.

        Raises:
            UnresolvedReferenceError: Unknown scope, malformed reference or
                a path that does not resolve.
        """
        expression = strip_braces(reference)
        parts = [p.strip() for p in expression.split(".")]
        if len(parts) < 2 or not all(parts):
            raise UnresolvedReferenceError(
                reference, f"Invalid variable format: {expression}"
            )

        scope_name, path = parts[0], parts[1:]
        scope = parse_scope(scope_name)
        if scope is None:
            raise UnresolvedReferenceError(reference, f"Unknown scope: {scope_name}")

        label = _SCOPE_LABELS[scope]
        state = context.state

        if scope is Scope.HEADER:
            headers = state.current_headers.get(context.current_step_id or "")
            if headers is None:
                raise UnresolvedReferenceError(
                    reference, "Headers are only available while a step is executing"
                )
            wanted = ".".join(path).lower()
            for name, value in headers.items():
                if name.lower() == wanted:
                    return value
            raise UnresolvedReferenceError(reference, f"{label} not found: {wanted}")

        try:
            value = navigate_path(state.container(scope), path)
        except KeyError:
            raise UnresolvedReferenceError(
                reference, f"{label} not found: {'.'.join(path)}"
            ) from None

        if value is None:
            raise UnresolvedReferenceError(
                reference, f"{label} is null: {'.'.join(path)}"
            )
        return value

    @classmethod
    def interpolate(cls, text: str, context: InterpolationContext) -> str:
        """Replace every resolvable reference in ``text``."""
        if not text or not isinstance(text, str):
            return text

        def _replace(match: re.Match) -> str:
            raw = match.group(0)
            try:
                value = cls.resolve_reference(raw, context)
            except UnresolvedReferenceError as exc:
                if context.debug:
                    logger.debug(f"{raw} left unresolved: {exc.reason}")
                return raw
            rendered = format_value(value)
            if context.debug:
                logger.debug(f"{raw} -> {rendered}")
            return rendered

        return VARIABLE_PATTERN.sub(_replace, text)

    @classmethod
    def interpolate_object(cls, obj: Any, context: InterpolationContext) -> Any:
        """Interpolate every string leaf of a nested structure."""
        if isinstance(obj, str):
            return cls.interpolate(obj, context)
        if isinstance(obj, Mapping):
            return {key: cls.interpolate_object(value, context) for key, value in obj.items()}
        if isinstance(obj, (list, tuple)):
            return type(obj)(cls.interpolate_object(item, context) for item in obj)
        return obj

    @staticmethod
    def extract_variable_references(text: str) -> List[str]:
        """Return the raw ``{{...}}`` references found in ``text``."""
        if not text or not isinstance(text, str):
            return []
        return [match.group(0) for match in VARIABLE_PATTERN.finditer(text)]

    @classmethod
    def extract_object_references(cls, obj: Any) -> List[str]:
        """References found in any string leaf of a nested structure."""
        if isinstance(obj, str):
            return cls.extract_variable_references(obj)
        refs: List[str] = []
        if isinstance(obj, Mapping):
            for value in obj.values():
                refs.extend(cls.extract_object_references(value))
        elif isinstance(obj, (list, tuple)):
            for item in obj:
                refs.extend(cls.extract_object_references(item))
        return refs

    @classmethod
    def validate_references(
        cls, references: List[str], context: InterpolationContext
    ) -> Dict[str, List[Any]]:
        """Partition references into resolvable and unresolvable ones."""
        valid: List[str] = []
        invalid: List[Dict[str, str]] = []
        for reference in references:
            try:
                cls.resolve_reference(reference, context)
            except UnresolvedReferenceError as exc:
                invalid.append({"reference": reference, "error": exc.reason})
            else:
                valid.append(reference)
        return {"valid": valid, "invalid": invalid}

    @staticmethod
    def has_variables(text: str) -> bool:
        if not text or not isinstance(text, str):
            return False
        return VARIABLE_PATTERN.search(text) is not None

    @classmethod
    def get_variable_types(cls, text: str) -> List[str]:
        """Distinct first segments of the references in ``text``, in order."""
        types: List[str] = []
        for reference in cls.extract_variable_references(text):
            name = strip_braces(reference).split(".", 1)[0].strip()
            scope = parse_scope(name)
            kind = scope.value if scope is not None else name
            if kind not in types:
                types.append(kind)
        return types

    @staticmethod
    def build_variable_summary(context: InterpolationContext) -> Dict[str, List[str]]:
        state = context.state
        return {
            "available_inputs": list(state.flow_inputs),
            "available_environment": list(state.environment),
            "available_runtime": list(state.runtime_vars),
            "available_config": list(state.config),
            "available_steps": list(state.step_outputs),
            "available_headers": list(
                state.current_headers.get(context.current_step_id or "", {})
            ),
        }
