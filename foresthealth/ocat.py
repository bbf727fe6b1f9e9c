"""
Ordered-categorical (cumulative logit) family.

A single latent linear predictor eta and R-1 increasing cut points theta:

    P(y <= k) = F(theta_k - eta),   F = logistic cdf

with theta_0 = -inf and theta_R = +inf. Classes are integer codes 0..R-1.
"""

import numpy as np
from scipy.special import expit, logit

# floor for class probabilities inside the log-likelihood
_P_MIN = 1e-300


class OrderedCategorical:
    """Ordered-categorical response with ``n_classes`` ordered classes."""

    def __init__(self, n_classes: int = 3):
        if int(n_classes) < 2:
            raise ValueError(f"n_classes must be >= 2, got {n_classes}")
        self.n_classes = int(n_classes)

    def __repr__(self):
        return f"OrderedCategorical(n_classes={self.n_classes})"

    def __eq__(self, other):
        return isinstance(other, OrderedCategorical) and other.n_classes == self.n_classes

    def __hash__(self):
        return hash(("ocat", self.n_classes))

    @property
    def n_thresholds(self) -> int:
        return self.n_classes - 1

    def _cuts(self, theta):
        theta = np.asarray(theta, dtype=float)
        if theta.shape != (self.n_thresholds,):
            raise ValueError(f"expected {self.n_thresholds} cut points, got shape {theta.shape}")
        return np.concatenate([[-np.inf], theta, [np.inf]])

    def valid_thresholds(self, theta) -> bool:
        theta = np.asarray(theta, dtype=float)
        return bool(np.all(np.isfinite(theta)) and np.all(np.diff(theta) > 0))

    def initial_thresholds(self, y) -> np.ndarray:
        """Cut points matching the marginal class frequencies at eta = 0."""
        y = np.asarray(y, dtype=int)
        counts = np.bincount(y, minlength=self.n_classes).astype(float) + 0.5
        cum = np.cumsum(counts)[:-1] / counts.sum()
        return logit(cum)

    def probabilities(self, eta, theta) -> np.ndarray:
        """Class probabilities, shape (n, n_classes); rows sum to one."""
        eta = np.asarray(eta, dtype=float).ravel()
        cdf = expit(self._cuts(theta)[None, :] - eta[:, None])
        return np.diff(cdf, axis=1)

    def _pieces(self, eta, theta, y):
        cuts = self._cuts(theta)
        upper = cuts[y + 1] - eta
        lower = cuts[y] - eta
        Fu, Fl = expit(upper), expit(lower)
        # P = F(u) - F(l); use the upper tail when both are close to one
        p = np.where(lower > 0, expit(-lower) - expit(-upper), Fu - Fl)
        p = np.maximum(p, _P_MIN)
        fu, fl = Fu * (1 - Fu), Fl * (1 - Fl)
        dfu, dfl = fu * (1 - 2 * Fu), fl * (1 - 2 * Fl)
        return p, fu, fl, dfu, dfl

    def loglik(self, eta, theta, y) -> float:
        eta = np.asarray(eta, dtype=float).ravel()
        y = np.asarray(y, dtype=int)
        p = self._pieces(eta, theta, y)[0]
        return float(np.sum(np.log(p)))

    def derivatives(self, eta, theta, y):
        """
        Log-likelihood and its first and second derivatives.

        Returns
        -------
        ll : float
        d_eta : (n,) dl/deta per observation
        d2_eta : (n,) d2l/deta2 per observation
        g_theta : (R-1,) dl/dtheta
        h_eta_theta : (n, R-1) d2l/(deta dtheta) per observation
        h_theta : (R-1, R-1) d2l/dtheta2
        """
        eta = np.asarray(eta, dtype=float).ravel()
        y = np.asarray(y, dtype=int)
        K = self.n_thresholds
        p, fu, fl, dfu, dfl = self._pieces(eta, theta, y)

        d_eta = -(fu - fl) / p
        d2_eta = (dfu - dfl) / p - d_eta ** 2

        g_up = fu / p
        g_lo = -fl / p
        h_up_up = dfu / p - g_up ** 2
        h_lo_lo = -dfl / p - g_lo ** 2
        h_up_lo = fu * fl / p ** 2
        h_eta_up = -dfu / p + fu * (fu - fl) / p ** 2
        h_eta_lo = dfl / p - fl * (fu - fl) / p ** 2

        g_theta = np.zeros(K)
        h_theta = np.zeros((K, K))
        h_eta_theta = np.zeros((eta.size, K))
        for k in range(K):
            up = y == k          # theta_k is the upper cut of class k
            lo = y == k + 1      # ... and the lower cut of class k+1
            g_theta[k] = g_up[up].sum() + g_lo[lo].sum()
            h_theta[k, k] = h_up_up[up].sum() + h_lo_lo[lo].sum()
            h_eta_theta[up, k] = h_eta_up[up]
            h_eta_theta[lo, k] = h_eta_lo[lo]
            if k > 0:
                # class k sits between theta_{k-1} and theta_k
                cross = h_up_lo[up].sum()
                h_theta[k, k - 1] = h_theta[k - 1, k] = cross

        ll = float(np.sum(np.log(p)))
        return ll, d_eta, d2_eta, g_theta, h_eta_theta, h_theta
