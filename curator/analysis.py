"""Cover quality analysis for Curator.

Detects covers that are landscape art filled into a portrait (600x900) frame,
which leaves uniform bands at the top and bottom of the image.

Two phases keep the common case cheap:
- Phase 1 always runs: an entropy proxy (sum of per-channel standard
  deviation) over a top, middle and bottom band.
- Phase 2 runs only when the middle band is markedly busier than the edges:
  band colour variance plus a horizontal edge check at typical fill
  boundary rows.

`analyze_cover` is the unit of work dispatched to audit workers. It never
raises for image-level failures; those become a `corrupt` result.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import List, NamedTuple, Tuple

from PIL import Image, ImageChops, ImageStat
from pydantic import Field

from .logging_config import get_logger
from .schemas import CamelModel

logger = get_logger(__name__)


BAND_HEIGHT = 100
MIDDLE_BAND_START = 0.4
BOUNDARY_ROWS = (0.2, 0.25, 0.75, 0.8)
BOUNDARY_MARGIN = 5
BOUNDARY_OFFSET = 2

ENTROPY_RATIO_THRESHOLD = 1.5
PILLARBOX_ENTROPY_THRESHOLD = 50
COLOR_VARIANCE_THRESHOLD = 500
LOW_EDGE_ENTROPY_THRESHOLD = 30
LOW_EDGE_VARIANCE_THRESHOLD = 300
EDGE_SCORE_THRESHOLD = 0.3

PENALTY_PILLARBOX = 40
PENALTY_LOW_ENTROPY_EDGES = 15
PENALTY_HORIZONTAL_BOUNDARY = 20

SCORE_MAX = 100
SCORE_PASSED = 70  # >= 70 is a good cover
SCORE_FLAGGED = 40  # 40-69 needs review, below is failed


class CoverIssue(str, Enum):
    PILLARBOX_FILL = "pillarbox_fill"
    LOW_ENTROPY_EDGES = "low_entropy_edges"
    HORIZONTAL_BOUNDARY = "horizontal_boundary"
    CORRUPT = "corrupt"


class CoverMetrics(CamelModel):
    top_band_entropy: float = 0.0
    middle_entropy: float = 0.0
    bottom_band_entropy: float = 0.0
    entropy_ratio: float = 0.0
    top_color_variance: float = 0.0
    bottom_color_variance: float = 0.0
    horizontal_edge_score: float = 0.0


class CoverAnalysis(CamelModel):
    game_id: int
    file_path: str
    score: int = Field(ge=0, le=SCORE_MAX)
    issues: List[CoverIssue] = Field(default_factory=list)
    metrics: CoverMetrics = Field(default_factory=CoverMetrics)
    flagged_for_review: bool
    analyzed_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def is_corrupt(self) -> bool:
        return CoverIssue.CORRUPT in self.issues

    @classmethod
    def corrupt(cls, game_id: int, file_path: Path | str) -> "CoverAnalysis":
        """Result for a cover that could not be read or analyzed."""
        return cls(
            game_id=game_id,
            file_path=str(file_path),
            score=0,
            issues=[CoverIssue.CORRUPT],
            metrics=CoverMetrics(),
            flagged_for_review=True,
        )


class Score(NamedTuple):
    score: int
    issues: List[CoverIssue]


def _band_entropy(image: Image.Image, top: int, height: int) -> float:
    """Sum of per-channel standard deviation over a full-width horizontal band."""
    band = image.crop((0, top, image.width, top + height))
    return float(sum(ImageStat.Stat(band).stddev))


def _band_layout(image_height: int) -> Tuple[int, int, int]:
    """Return (band_height, middle_start, bottom_start) for an image height."""
    band_height = min(BAND_HEIGHT, image_height // 3)
    middle_start = int(image_height * MIDDLE_BAND_START)
    bottom_start = max(0, image_height - band_height)
    return band_height, middle_start, bottom_start


def horizontal_edge_score(image: Image.Image) -> float:
    """Strongest horizontal edge across the candidate fill boundary rows.

    Each check compares the greyscale row two pixels above a boundary row with
    the row two pixels below it (mean absolute difference scaled to 0-1).
    The maximum is reported because a fill boundary sits at only one of the
    sampled heights, depending on the source aspect ratio.
    """
    gray = image.convert("L")
    width, height = gray.size
    strongest = 0.0

    for fraction in BOUNDARY_ROWS:
        row = int(height * fraction)
        if row < BOUNDARY_MARGIN or row >= height - BOUNDARY_MARGIN:
            continue

        above = gray.crop((0, row - BOUNDARY_OFFSET, width, row - BOUNDARY_OFFSET + 1))
        below = gray.crop((0, row + BOUNDARY_OFFSET, width, row + BOUNDARY_OFFSET + 1))
        diff = ImageChops.difference(above, below)
        gradient = ImageStat.Stat(diff).mean[0] / 255
        strongest = max(strongest, gradient)

    return strongest


def compute_metrics(image: Image.Image) -> CoverMetrics:
    """Compute cover metrics for an already opened RGB image."""
    width, height = image.size
    band_height, middle_start, bottom_start = _band_layout(height)
    if width <= 0 or band_height <= 0:
        raise ValueError(f"Image too small to analyze: {width}x{height}")

    # Phase 1
    top = _band_entropy(image, 0, band_height)
    middle = _band_entropy(image, middle_start, band_height)
    bottom = _band_entropy(image, bottom_start, band_height)

    edge_avg = (top + bottom) / 2
    ratio = middle / edge_avg if edge_avg > 0 else 1.0

    metrics = CoverMetrics(
        top_band_entropy=top,
        middle_entropy=middle,
        bottom_band_entropy=bottom,
        entropy_ratio=ratio,
    )
    if ratio <= ENTROPY_RATIO_THRESHOLD:
        return metrics

    # Phase 2
    metrics.top_color_variance = _band_entropy(image, 0, band_height)
    metrics.bottom_color_variance = _band_entropy(image, bottom_start, band_height)
    metrics.horizontal_edge_score = horizontal_edge_score(image)
    return metrics


def extract_metrics(path: Path) -> CoverMetrics:
    """Open an image file and compute its cover metrics.

    Raises OSError / ValueError when the file cannot be decoded.
    """
    with Image.open(path) as im:
        im.load()
        rgb = im.convert("RGB")
    return compute_metrics(rgb)


def score_metrics(metrics: CoverMetrics) -> Score:
    """Score cover metrics. Pure: identical metrics always give identical output."""
    score = SCORE_MAX
    issues: List[CoverIssue] = []

    if metrics.entropy_ratio > ENTROPY_RATIO_THRESHOLD:
        uniform_top = (
            metrics.top_band_entropy < PILLARBOX_ENTROPY_THRESHOLD
            and metrics.top_color_variance < COLOR_VARIANCE_THRESHOLD
        )
        uniform_bottom = (
            metrics.bottom_band_entropy < PILLARBOX_ENTROPY_THRESHOLD
            and metrics.bottom_color_variance < COLOR_VARIANCE_THRESHOLD
        )
        if uniform_top or uniform_bottom:
            score -= PENALTY_PILLARBOX
            issues.append(CoverIssue.PILLARBOX_FILL)

    # Applied once even when both edges qualify
    low_top = (
        metrics.top_band_entropy < LOW_EDGE_ENTROPY_THRESHOLD
        and metrics.top_color_variance < LOW_EDGE_VARIANCE_THRESHOLD
    )
    low_bottom = (
        metrics.bottom_band_entropy < LOW_EDGE_ENTROPY_THRESHOLD
        and metrics.bottom_color_variance < LOW_EDGE_VARIANCE_THRESHOLD
    )
    if low_top or low_bottom:
        score -= PENALTY_LOW_ENTROPY_EDGES
        issues.append(CoverIssue.LOW_ENTROPY_EDGES)

    if metrics.horizontal_edge_score > EDGE_SCORE_THRESHOLD:
        score -= PENALTY_HORIZONTAL_BOUNDARY
        issues.append(CoverIssue.HORIZONTAL_BOUNDARY)

    return Score(max(0, score), issues)


def analyze_cover(game_id: int, file_path: Path | str) -> CoverAnalysis:
    """Analyze a single cover file. Unreadable files yield a corrupt result."""
    path = Path(file_path)
    if not path.is_file():
        logger.warning(f"✗ Cover for game {game_id} missing: {path}")
        return CoverAnalysis.corrupt(game_id, path)

    try:
        metrics = extract_metrics(path)
    except Exception as exc:
        logger.error(f"✗ {path.name} (game {game_id}) - CORRUPT: {exc}")
        return CoverAnalysis.corrupt(game_id, path)

    score, issues = score_metrics(metrics)
    return CoverAnalysis(
        game_id=game_id,
        file_path=str(path),
        score=score,
        issues=issues,
        metrics=metrics,
        flagged_for_review=score < SCORE_PASSED,
    )
