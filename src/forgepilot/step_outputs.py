from __future__ import annotations

from collections.abc import Mapping
import logging
from pathlib import Path
import uuid

from forgepilot.observability import log_event


LOGGER = logging.getLogger("forgepilot.step_outputs")


class StepOutputs:
    """Appends ``name=value`` pairs to the workflow step output file.

    Without an output path the values are only kept in memory, which is what
    the in-process ``run`` command and the tests rely on.
    """

    def __init__(self, path: Path | None) -> None:
        self.path = path
        self.values: dict[str, str] = {}

    def set(self, name: str, value: str | int | bool | None) -> None:
        if value is None:
            text = ""
        elif isinstance(value, bool):
            text = "true" if value else "false"
        else:
            text = str(value)
        self.values[name] = text
        if self.path is None:
            return
        with self.path.open("a", encoding="utf-8") as fh:
            fh.write(format_output(name, text))
        log_event(LOGGER, "step_output_written", name=name, chars=len(text))

    def set_many(self, values: Mapping[str, str | int | bool | None]) -> None:
        for name, value in values.items():
            self.set(name, value)


def format_output(name: str, value: str, *, delimiter: str | None = None) -> str:
    if "\n" not in value and "\r" not in value:
        return f"{name}={value}\n"
    marker = delimiter or f"ghadelimiter_{uuid.uuid4()}"
    if marker in value:
        raise ValueError(f"Output delimiter collides with the value of {name}")
    return f"{name}<<{marker}\n{value}\n{marker}\n"

