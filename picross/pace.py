import math
from typing import List, Sequence, Tuple

from .cache import cache_kde_path, get_cached_kde_path


def compute_kde_points(timestamps: Sequence[int], total_ms: float, bins: int = 80) -> List[Tuple[float, float]]:
    """Gaussian KDE of move activity over [0, total_ms].

    Returns one (x, y) point per bucket centre, both in [0, 1], or an empty
    list when there is not enough data. Edges are eased to zero with a
    smoothstep taper so the curve has no kink where the taper ends.
    """
    if len(timestamps) < 2 or total_ms <= 0:
        return []

    bandwidth = max(total_ms / 20, 1)
    bucket_ms = total_ms / bins
    density = [0.0] * bins
    for at_ms in timestamps:
        center = (at_ms / total_ms) * bins
        for b in range(bins):
            dist = (b + 0.5 - center) * bucket_ms
            density[b] += math.exp(-0.5 * (dist / bandwidth) ** 2)

    max_d = max(density)
    if max_d == 0:
        return []

    taper = min(16, bins // 5)
    for i in range(taper):
        t = (i + 1) / (taper + 1)
        w = t * t * (3 - 2 * t)
        density[i] *= w
        density[bins - 1 - i] *= w

    return [((b + 0.5) / bins, density[b] / max_d) for b in range(bins)]


def compute_kde_path(timestamps: Sequence[int], total_ms: float, bins: int = 80,
                     view_width: int = 100, view_height: int = 28) -> str:
    """Filled-area SVG path of the pace curve, or "" if there is nothing to draw."""
    points = compute_kde_points(timestamps, total_ms, bins)
    if not points:
        return ""
    parts = [f"M0,{view_height}"]
    for x, y in points:
        parts.append(f"L{x * view_width:.2f},{view_height - y * (view_height - 2):.1f}")
    parts.append(f"L{view_width},{view_height} Z")
    return " ".join(parts)


def kde_path_for_attempt(attempt_id: str, timestamps: Sequence[int], duration_ms) -> str:
    # duration_ms is final once set, so the path never changes afterwards
    if not duration_ms or duration_ms <= 0:
        return ""
    path = get_cached_kde_path(attempt_id)
    if path is None:
        path = compute_kde_path(timestamps, duration_ms)
        cache_kde_path(attempt_id, path)
    return path
