"""
Persistent per-controller state, mutated once per successful tick.

The controller never mutates the published state in place: each tick works on
`ControllerState.copy()` and publishes the copy with a single reference swap.
"""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np

from .types import QPControllerOutput


@dataclass(frozen=True)
class WarmStartBasis:
    """
    Opaque warm-start token owned by the solver driver.

    Holds the primal/dual iterates of the previous solve. Valid only for the same
    contact topology and problem shape.
    """

    x: np.ndarray
    y: np.ndarray
    topology: tuple
    shape: tuple[int, int]

    def is_valid_for(self, topology: tuple, shape: tuple[int, int]) -> bool:
        return self.topology == topology and tuple(self.shape) == tuple(shape)


@dataclass
class ControllerState:
    t_prev: float | None
    foot_contact_prev: tuple[bool, bool]
    vref_integrator_state: np.ndarray
    q_integrator_state: np.ndarray
    warm_start: WarmStartBasis | None = None
    last_output: QPControllerOutput | None = None
    consecutive_faults: int = 0
    # Exponential moving average of QP solve latency (s)
    solve_latency: float = 0.0

    @classmethod
    def initial(cls, num_velocities: int) -> "ControllerState":
        nv = int(num_velocities)
        return cls(
            t_prev=None,
            foot_contact_prev=(False, False),
            vref_integrator_state=np.zeros(nv, dtype=float),
            q_integrator_state=np.zeros(nv, dtype=float),
        )

    def copy(self) -> "ControllerState":
        return ControllerState(
            t_prev=self.t_prev,
            foot_contact_prev=(bool(self.foot_contact_prev[0]), bool(self.foot_contact_prev[1])),
            vref_integrator_state=self.vref_integrator_state.copy(),
            q_integrator_state=self.q_integrator_state.copy(),
            # token is immutable
            warm_start=self.warm_start,
            last_output=None if self.last_output is None else self.last_output.copy(),
            consecutive_faults=int(self.consecutive_faults),
            solve_latency=float(self.solve_latency),
        )

    def elapsed(self, t: float) -> float:
        """Time since the previous tick; 0 on the first tick or after a clock reset."""
        if self.t_prev is None:
            return 0.0
        dt = float(t) - float(self.t_prev)
        return dt if dt > 0.0 else 0.0
