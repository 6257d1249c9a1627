"""Numeric model collaborator: neural mass + balloon hemodynamics + BOLD.

Each region carries five states, in this order:

    x      neuronal activity, x_dot = sum_j A_ij x_j (+ input)
    s      vasodilatory signal, s_dot = x - kappa s - gamma (f - 1)
    ln f   blood inflow, (ln f)_dot = s / f
    ln v   venous volume, (ln v)_dot = (f - v^(1/alpha)) / (tau v)
    ln q   deoxyhemoglobin, (ln q)_dot = (f E(f, rho) / rho - v^(1/alpha) q / v) / (tau q)

with E(f, rho) = 1 - (1 - rho)^(1/f). Self-connections are parameterised as
A_ii = -exp(a_ii) / 2 so that they stay inhibitory. The BOLD signal is

    y = V0 (k1 (1 - q) + k2 (1 - q / v) + k3 (1 - v))

(Friston et al. 2003; Stephan et al. 2007). Only the Jacobians at a given
state are exposed; the optimizer never sees the equations themselves.
"""

from __future__ import annotations

from typing import Dict, Tuple

import numpy as np

from .exceptions import MalformedInputError
from .schema import ParameterSchema, ParameterSpec

# hemodynamic constants: decay, autoregulation, transit time, Grubb exponent,
# resting oxygen extraction
H_KAPPA = 0.64
H_GAMMA = 0.32
H_TAU = 2.0
H_ALPHA = 0.32
H_RHO = 0.40

# BOLD constants: intravascular relaxation, frequency offset, extraction,
# echo time, resting volume (percent)
BOLD_R0 = 25.0
BOLD_NU0 = 40.3
BOLD_E0 = 0.4
BOLD_TE = 0.04
BOLD_V0 = 4.0

N_STATES_PER_REGION = 5

DEFAULT_TAG_VARIANCES: Dict[str, float] = {
    "connectivity": 1.0 / 64.0,
    "hemodynamic": 1.0 / 256.0,
    "observation": 1.0 / 256.0,
    "fluctuation": 1.0 / 64.0,
    "input": 0.0,
}


class HemodynamicDCM:
    """Linear neural mass coupled to hemodynamics for `n_regions` regions."""

    def __init__(self, n_regions: int):
        if n_regions <= 0:
            raise MalformedInputError("n_regions must be positive")
        self.n_regions = int(n_regions)
        n = self.n_regions
        self.schema = ParameterSchema(
            [
                ParameterSpec("A", (n, n), "connectivity"),
                ParameterSpec("kappa", (n,), "hemodynamic"),
                ParameterSpec("transit", (n,), "hemodynamic"),
                ParameterSpec("ln_alpha", (2,), "fluctuation"),
                ParameterSpec("ln_beta", (2,), "fluctuation"),
                ParameterSpec("ln_gamma", (n,), "fluctuation"),
                ParameterSpec("C", (n,), "input"),
                ParameterSpec("epsilon", (), "observation"),
            ]
        )

    @property
    def n_states(self) -> int:
        return N_STATES_PER_REGION * self.n_regions

    def default_parameters(self, A: np.ndarray | None = None) -> Dict[str, np.ndarray]:
        """Prior means; `A` optionally overrides the connectivity."""
        n = self.n_regions
        params = {
            "A": np.zeros((n, n)) if A is None else np.asarray(A, float).reshape(n, n).copy(),
            "kappa": np.zeros(n),
            "transit": np.zeros(n),
            "ln_alpha": np.zeros(2),
            "ln_beta": np.zeros(2),
            "ln_gamma": np.zeros(n),
            "C": np.ones(n),
            "epsilon": np.zeros(()),
        }
        return params

    def default_prior_variances(self, connectivity_variance: float | None = None) -> np.ndarray:
        """Flat prior variance vector, one value per parameter tag."""
        tag_var = dict(DEFAULT_TAG_VARIANCES)
        if connectivity_variance is not None:
            tag_var["connectivity"] = float(connectivity_variance)
        return self.schema.tag_vector(tag_var)

    def initial_states(self) -> np.ndarray:
        """Resting state (all log-states zero), shape (n_regions, 5)."""
        return np.zeros((self.n_regions, N_STATES_PER_REGION))

    def _check_states(self, states) -> np.ndarray:
        X = np.asarray(states, float)
        if X.size != self.n_states:
            raise MalformedInputError(
                f"expected {self.n_states} states ({self.n_regions} x {N_STATES_PER_REGION}), got {X.size}"
            )
        return X.reshape(self.n_regions, N_STATES_PER_REGION)

    def effective_connectivity(self, A: np.ndarray) -> np.ndarray:
        A = np.array(A, float).reshape(self.n_regions, self.n_regions)
        d = np.diag_indices(self.n_regions)
        A[d] = -np.exp(A[d]) / 2.0
        return A

    def flow(self, params: Dict[str, np.ndarray], states: np.ndarray, u: np.ndarray | None = None) -> np.ndarray:
        """State derivatives, shape (n_regions, 5)."""
        X = self._check_states(states)
        A = self.effective_connectivity(params["A"])
        kappa = H_KAPPA * np.exp(np.asarray(params["kappa"], float))
        tau = H_TAU * np.exp(np.asarray(params["transit"], float))
        x, s = X[:, 0], X[:, 1]
        f, v, q = np.exp(X[:, 2]), np.exp(X[:, 3]), np.exp(X[:, 4])
        fv = v ** (1.0 / H_ALPHA)
        ff = (1.0 - (1.0 - H_RHO) ** (1.0 / f)) / H_RHO

        dX = np.empty_like(X)
        dX[:, 0] = A @ x + (0.0 if u is None else self.input_matrix(params)[::N_STATES_PER_REGION] @ u)
        dX[:, 1] = x - kappa * s - H_GAMMA * (f - 1.0)
        dX[:, 2] = s / f
        dX[:, 3] = (f - fv) / (tau * v)
        dX[:, 4] = (f * ff - fv * q / v) / (tau * q)
        return dX

    def observe(self, params: Dict[str, np.ndarray], states: np.ndarray) -> np.ndarray:
        """BOLD signal per region."""
        X = self._check_states(states)
        eps = float(np.exp(np.asarray(params["epsilon"], float)))
        v, q = np.exp(X[:, 3]), np.exp(X[:, 4])
        k1 = 4.3 * BOLD_NU0 * BOLD_E0 * BOLD_TE
        k2 = eps * BOLD_R0 * BOLD_E0 * BOLD_TE
        k3 = 1.0 - eps
        return BOLD_V0 * (k1 * (1.0 - q) + k2 * (1.0 - q / v) + k3 * (1.0 - v))

    def jacobians(self, params: Dict[str, np.ndarray], states: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        """State Jacobian df/dx (n_states, n_states) and observation gradient dg/dx (n_regions, n_states)."""
        n = self.n_regions
        X = self._check_states(states)
        A = self.effective_connectivity(params["A"])
        kappa = H_KAPPA * np.exp(np.asarray(params["kappa"], float))
        tau = H_TAU * np.exp(np.asarray(params["transit"], float))
        eps = float(np.exp(np.asarray(params["epsilon"], float)))

        s = X[:, 1]
        f, v, q = np.exp(X[:, 2]), np.exp(X[:, 3]), np.exp(X[:, 4])
        ia = 1.0 / H_ALPHA
        fv1 = v ** (ia - 1.0)
        ff = (1.0 - (1.0 - H_RHO) ** (1.0 / f)) / H_RHO
        dff = (1.0 - H_RHO) ** (1.0 / f) * np.log(1.0 - H_RHO) / (H_RHO * f ** 2)

        J = np.zeros((self.n_states, self.n_states))
        k = N_STATES_PER_REGION
        xi = np.arange(n) * k
        J[np.ix_(xi, xi)] = A
        for r in range(n):
            ix, is_, if_, iv, iq = xi[r] + np.arange(k)
            J[is_, ix] = 1.0
            J[is_, is_] = -kappa[r]
            J[is_, if_] = -H_GAMMA * f[r]
            J[if_, is_] = 1.0 / f[r]
            J[if_, if_] = -s[r] / f[r]
            J[iv, if_] = f[r] / (tau[r] * v[r])
            J[iv, iv] = (-f[r] / v[r] - (ia - 1.0) * fv1[r]) / tau[r]
            J[iq, if_] = f[r] * (ff[r] + f[r] * dff[r]) / (tau[r] * q[r])
            J[iq, iv] = -(ia - 1.0) * fv1[r] / tau[r]
            J[iq, iq] = -f[r] * ff[r] / (tau[r] * q[r])

        k1 = 4.3 * BOLD_NU0 * BOLD_E0 * BOLD_TE
        k2 = eps * BOLD_R0 * BOLD_E0 * BOLD_TE
        k3 = 1.0 - eps
        G = np.zeros((n, self.n_states))
        G[np.arange(n), xi + 3] = BOLD_V0 * (k2 * q / v - k3 * v)
        G[np.arange(n), xi + 4] = BOLD_V0 * (-k1 * q - k2 * q / v)
        return J, G

    def input_matrix(self, params: Dict[str, np.ndarray]) -> np.ndarray:
        """df/du: endogenous fluctuations drive the neuronal state of each region."""
        n = self.n_regions
        C = np.asarray(params["C"], float).reshape(n)
        B = np.zeros((self.n_states, n))
        B[np.arange(n) * N_STATES_PER_REGION, np.arange(n)] = C / 16.0
        return B
