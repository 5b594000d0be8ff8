import os
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Optional, Tuple

from pydantic import ValidationError, create_model

from utils import log

logger = log.get_logger(__name__)


@dataclass(frozen=True)
class EnvVarSpec:
    """Declaration of one environment variable.

    ``parse`` turns the raw string into a Python value and ``type`` is a
    pydantic field definition the parsed value is checked against.
    """

    id: str
    default: Optional[str] = None
    parse: Optional[Callable[[str], Any]] = None
    type: Tuple[Any, Any] = (str, ...)
    is_optional: bool = False
    is_secret: bool = False
    choices: Optional[Tuple[str, ...]] = None


def _raw(spec: EnvVarSpec) -> Optional[str]:
    value = os.environ.get(spec.id)
    if value is None or value == "":
        return spec.default
    return value


def parse(spec: EnvVarSpec) -> Any:
    value = _raw(spec)
    if value is None:
        return None
    return spec.parse(value) if spec.parse else value


def _check(spec: EnvVarSpec) -> Optional[str]:
    value = _raw(spec)
    if value is None:
        return None if spec.is_optional else "is required but not set"
    if spec.choices and value not in spec.choices:
        return f"must be one of {', '.join(spec.choices)}"
    try:
        parsed = spec.parse(value) if spec.parse else value
    except (TypeError, ValueError) as e:
        return f"could not be parsed: {e}"
    model = create_model(f"Env_{spec.id}", value=spec.type)
    try:
        model(value=parsed)
    except ValidationError as e:
        return f"has an invalid value: {e.errors()[0]['msg']}"
    return None


def validate(specs: Iterable[EnvVarSpec]) -> bool:
    ok = True
    for spec in specs:
        problem = _check(spec)
        if problem:
            shown = "<hidden>" if spec.is_secret else repr(_raw(spec))
            logger.error(f"Env var {spec.id} {problem} (value: {shown})")
            ok = False
    return ok
