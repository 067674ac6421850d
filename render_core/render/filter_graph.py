"""Typed model of an FFmpeg filter_complex graph.

Compositors build ``FilterStage`` objects and never concatenate strings
directly. ``FilterGraph.serialize`` is the only place that produces the
``[in]filter=a:b,filter2[out];...`` text.
"""

from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Iterator


@dataclass(frozen=True)
class Quoted:
    """Option value wrapped in single quotes (expressions containing commas)."""

    expr: str


def format_number(value: float) -> str:
    """Fixed-point rendering with at most 6 decimals and no trailing zeros."""
    text = f"{float(value):.6f}".rstrip("0").rstrip(".")
    return "0" if text in ("-0", "") else text


def _format_value(value: Any) -> str:
    if isinstance(value, Quoted):
        return f"'{value.expr}'"
    if isinstance(value, bool):
        return "1" if value else "0"
    if isinstance(value, (int, float)):
        return format_number(value)
    return str(value)


@dataclass(frozen=True)
class Filter:
    """One engine filter with positional and named parameters."""

    name: str
    positional: tuple[Any, ...] = ()
    options: tuple[tuple[str, Any], ...] = ()

    @classmethod
    def of(cls, name: str, *positional: Any, **options: Any) -> "Filter":
        return cls(name, tuple(positional), tuple(options.items()))

    def option(self, key: str, default: Any = None) -> Any:
        for k, v in self.options:
            if k == key:
                return v
        return default

    def serialize(self) -> str:
        parts = [_format_value(v) for v in self.positional]
        parts.extend(f"{k}={_format_value(v)}" for k, v in self.options)
        if not parts:
            return self.name
        return f"{self.name}={':'.join(parts)}"


@dataclass(frozen=True)
class FilterStage:
    """Filters chained with ``,`` between declared input pads and one output pad."""

    inputs: tuple[str, ...]
    filters: tuple[Filter, ...]
    output: str

    def serialize(self) -> str:
        pads_in = "".join(f"[{pad}]" for pad in self.inputs)
        chain = ",".join(f.serialize() for f in self.filters)
        return f"{pads_in}{chain}[{self.output}]"


@dataclass
class FilterGraph:
    """Ordered collection of stages with unique label allocation."""

    stages: list[FilterStage] = field(default_factory=list)
    _counters: dict[str, int] = field(default_factory=lambda: defaultdict(int), repr=False)

    def new_label(self, prefix: str) -> str:
        n = self._counters[prefix]
        self._counters[prefix] += 1
        return f"{prefix}{n}"

    def add(self, inputs: list[str] | tuple[str, ...], filters: list[Filter], output: str) -> str:
        """Append a stage and return its output label."""
        if not filters:
            raise ValueError("A filter stage needs at least one filter")
        if self.stage_producing(output) is not None:
            raise ValueError(f"Label already produced: {output}")
        self.stages.append(FilterStage(tuple(inputs), tuple(filters), output))
        return output

    def stage_producing(self, label: str) -> FilterStage | None:
        for stage in self.stages:
            if stage.output == label:
                return stage
        return None

    def filters_named(self, name: str) -> list[Filter]:
        return [f for f in self.iter_filters() if f.name == name]

    def iter_filters(self) -> Iterator[Filter]:
        for stage in self.stages:
            yield from stage.filters

    def serialize(self, separator: str = ";") -> str:
        return separator.join(stage.serialize() for stage in self.stages)

    def __len__(self) -> int:
        return len(self.stages)
