from __future__ import annotations

from collections.abc import Callable
from typing import Any, Literal

import numpy as np

# Called after each residual evaluation with (stage, evaluation index, cost).
# Observers are side-effect only; their return value is ignored.
IterationObserver = Callable[[str, int, float], None]

RobustLoss = Literal["linear", "huber", "cauchy"]


def run_least_squares(
    fun: Callable[[np.ndarray], np.ndarray],
    x0: np.ndarray,
    *,
    stage: str,
    observer: IterationObserver | None = None,
    **kwargs: Any,
):
    """
    Thin wrapper around `scipy.optimize.least_squares` (trf) with an optional observer.
    """
    from scipy.optimize import least_squares  # type: ignore

    if observer is None:
        wrapped = fun
    else:
        count = [0]

        def wrapped(p: np.ndarray) -> np.ndarray:
            r = fun(p)
            count[0] += 1
            observer(stage, count[0], float(0.5 * np.dot(r, r)))
            return r

    kwargs.setdefault("method", "trf")
    return least_squares(wrapped, np.asarray(x0, dtype=np.float64), **kwargs)


def robust_rho(s: np.ndarray, loss: RobustLoss, scale: float) -> np.ndarray:
    """
    Robust loss on squared residual norms `s`, with scipy's `f_scale` convention.
    """
    s = np.asarray(s, dtype=np.float64)
    c2 = float(scale) ** 2
    z = s / c2
    if loss == "linear":
        return s
    if loss == "huber":
        return c2 * np.where(z <= 1.0, z, 2.0 * np.sqrt(np.maximum(z, 1.0)) - 1.0)
    if loss == "cauchy":
        return c2 * np.log1p(z)
    raise ValueError(f"unsupported loss: {loss}")


def robustify(r: np.ndarray, weights: np.ndarray, loss: RobustLoss, scale: float) -> np.ndarray:
    """
    Rescale residual blocks so that 0.5*||out||^2 == 0.5 * sum_i w_i * rho(||r_i||^2).

    `r` is (N,D), one row per residual block; returns the flattened (N*D,) vector.
    This lets residual classes with different losses and weights share one solve.
    """
    r = np.asarray(r, dtype=np.float64)
    s = np.sum(r * r, axis=1)
    rho = robust_rho(s, loss, scale)
    safe = np.where(s > 1e-300, s, 1.0)
    factor = np.where(s > 1e-300, np.sqrt(np.maximum(rho, 0.0) / safe), 1.0)
    factor = factor * np.sqrt(np.asarray(weights, dtype=np.float64))
    return (r * factor[:, None]).reshape(-1)


def ray_residuals(P_cam: np.ndarray, rays: np.ndarray) -> np.ndarray:
    """
    Normalized image-plane difference between predicted points and observed rays, (N,2).
    """
    P_cam = np.asarray(P_cam, dtype=np.float64).reshape(-1, 3)
    rays = np.asarray(rays, dtype=np.float64).reshape(-1, 3)
    Z = np.where(np.abs(P_cam[:, 2]) > 1e-12, P_cam[:, 2], 1e-12)
    return P_cam[:, :2] / Z[:, None] - rays[:, :2] / rays[:, 2:3]
