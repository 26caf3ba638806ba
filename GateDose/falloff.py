"""
Dose falloff curves.

Each curve maps the normalised distance t = d / r in [0, 1] to the
interpolation weight alpha between a source's centre dose (alpha = 0)
and periphery dose (alpha = 1). Formulas follow the standard easing
equations and are evaluated element-wise on numpy arrays.
"""

from enum import Enum
from typing import Callable, Dict, Union

import numpy as np


class Falloff(str, Enum):
    Linear = "Linear"
    InSine = "InSine"
    OutSine = "OutSine"
    InOutSine = "InOutSine"
    InQuad = "InQuad"
    OutQuad = "OutQuad"
    InOutQuad = "InOutQuad"
    InCubic = "InCubic"
    OutCubic = "OutCubic"
    InExpo = "InExpo"
    OutExpo = "OutExpo"
    InCirc = "InCirc"
    OutCirc = "OutCirc"

    @classmethod
    def from_name(cls, name: Union[str, "Falloff"]) -> "Falloff":
        """
        Resolve a curve name.

        Raises
        ------
        ValueError
            Unknown name (there is no fallback curve)
        """
        try:
            return cls(name)
        except ValueError:
            options = ", ".join(m.value for m in cls)
            raise ValueError(f"Unknown falloff {name!r}. Options: {options}") from None

    def __call__(self, t):
        return evaluate_falloff(self, t)


def _in_out_quad(t):
    return np.where(t < 0.5, 2 * t * t, 1 - np.power(-2 * t + 2, 2) / 2)


def _in_expo(t):
    return np.where(t == 0, 0.0, np.power(2.0, 10 * t - 10))


def _out_expo(t):
    return np.where(t == 1, 1.0, 1 - np.power(2.0, -10 * t))


_KERNELS: Dict[Falloff, Callable[[np.ndarray], np.ndarray]] = {
    Falloff.Linear: lambda t: t,
    Falloff.InSine: lambda t: 1 - np.cos((t * np.pi) / 2),
    Falloff.OutSine: lambda t: np.sin((t * np.pi) / 2),
    Falloff.InOutSine: lambda t: -(np.cos(np.pi * t) - 1) / 2,
    Falloff.InQuad: lambda t: t * t,
    Falloff.OutQuad: lambda t: 1 - (1 - t) * (1 - t),
    Falloff.InOutQuad: _in_out_quad,
    Falloff.InCubic: lambda t: t * t * t,
    Falloff.OutCubic: lambda t: 1 - np.power(1 - t, 3),
    Falloff.InExpo: _in_expo,
    Falloff.OutExpo: _out_expo,
    Falloff.InCirc: lambda t: 1 - np.sqrt(1 - np.power(t, 2)),
    Falloff.OutCirc: lambda t: np.sqrt(1 - np.power(t - 1, 2)),
}


def evaluate_falloff(kind: Union[str, Falloff], t):
    """
    Evaluate a falloff curve.

    Parameters
    ----------
    kind : Falloff or str
        Curve to apply
    t : float or np.ndarray
        Normalised distance in [0, 1]

    Returns
    -------
    float or np.ndarray
        Same shape as ``t``; a Python float for scalar input
    """
    kernel = _KERNELS[Falloff.from_name(kind)]
    t_arr = np.asarray(t, dtype=np.float64)
    alpha = np.asarray(kernel(t_arr), dtype=np.float64)
    if alpha.ndim == 0:
        return float(alpha)
    return alpha
