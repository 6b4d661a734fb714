import io
import logging
import re
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Optional, Tuple, Union

from matplotlib.figure import Figure

from . import config
from .expression import ParseError, Series, compile_expression, sample
from .ocr import is_plottable_text

logger = logging.getLogger(__name__)

# Leading "y =" (any case, any spacing) is dropped before parsing
Y_PREFIX_PATTERN = re.compile(r"^y\s*=\s*", re.IGNORECASE)

Domain = Tuple[float, float, float]  # (start, end, step)
DEFAULT_DOMAIN: Domain = (config.DOMAIN_START, config.DOMAIN_END, config.DOMAIN_STEP)


class FailureReason(Enum):
    INVALID_EXPRESSION = "invalid_expression"
    NO_FINITE_POINTS = "no_finite_points"
    NO_PLOTTABLE_TEXT = "no_plottable_text"

    @property
    def message(self) -> str:
        return _FAILURE_MESSAGES[self]


_FAILURE_MESSAGES = {
    FailureReason.INVALID_EXPRESSION: "Invalid expression.",
    FailureReason.NO_FINITE_POINTS: "Could not plot: the expression has no finite values on the domain.",
    FailureReason.NO_PLOTTABLE_TEXT: "No plottable text was provided.",
}


@dataclass(frozen=True)
class Plotted:
    series: Series
    title: str
    expression: str = ""
    ok = True


@dataclass(frozen=True)
class Failed:
    reason: FailureReason
    detail: Optional[str] = None
    ok = False

    @property
    def message(self) -> str:
        if self.detail:
            return f"{self.reason.message} {self.detail}"
        return self.reason.message


PlotOutcome = Union[Plotted, Failed]


def normalize_equation(raw_text: str) -> str:
    """Trims the text and strips an optional leading 'y ='."""
    return Y_PREFIX_PATTERN.sub("", raw_text.strip(), count=1)


def attempt_plot(raw_text: str, label: str, domain: Optional[Domain] = None) -> PlotOutcome:
    """Turns free-form equation text into plottable series data.

    Never raises for bad input; every failure comes back as a Failed outcome.
    Blank text and the OCR error sentinel fail with NO_PLOTTABLE_TEXT before
    any parsing, not with INVALID_EXPRESSION.
    """
    if not is_plottable_text(raw_text):
        return Failed(FailureReason.NO_PLOTTABLE_TEXT)

    equation = normalize_equation(raw_text)
    try:
        parsed = compile_expression(equation, "x")
    except ParseError as e:
        logger.warning(f"Could not parse equation '{equation}': {e}")
        return Failed(FailureReason.INVALID_EXPRESSION, str(e))

    start, end, step = domain or DEFAULT_DOMAIN
    series = sample(parsed, start, end, step)
    if not series:
        logger.warning(f"Equation '{equation}' has no finite points on [{start}, {end}]")
        return Failed(FailureReason.NO_FINITE_POINTS)

    logger.info(f"Plotted '{equation}' with {len(series)} points")
    return Plotted(series, "Plot of " + label, equation)


# --- Chart Rendering ---


def _build_figure(outcome: Plotted) -> Figure:
    figure = Figure(figsize=(8, 4.5))
    axes = figure.add_subplot()
    axes.plot(outcome.series.xs, outcome.series.ys, linewidth=2.0, label=f"y = {outcome.expression}")
    axes.set_title(outcome.title)
    axes.set_xlabel("X")
    axes.set_ylabel("Y")
    axes.grid(True, alpha=0.3)
    axes.legend()
    figure.tight_layout()
    return figure


def render_png(outcome: Plotted, dpi: int = 100) -> bytes:
    """Renders a plotted outcome as PNG bytes."""
    buffer = io.BytesIO()
    _build_figure(outcome).savefig(buffer, format="png", dpi=dpi)
    return buffer.getvalue()


def save_png(outcome: Plotted, path, dpi: int = 100) -> Path:
    output = Path(path)
    output.parent.mkdir(parents=True, exist_ok=True)
    output.write_bytes(render_png(outcome, dpi=dpi))
    logger.info(f"Chart saved to {output}")
    return output
