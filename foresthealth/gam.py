"""
Penalised-likelihood GAM with an ordered-categorical response.

fit() takes an explicit ModelSpec, builds the penalised design (pyGAM
P-spline bases, MRF bases from a neighbour graph, treatment-coded factors)
and estimates:

  - coefficients and cut points by penalised Newton iterations (inner loop)
  - smoothing parameters by minimising the Laplace-approximate REML
    criterion over log smoothing parameters with scipy's L-BFGS-B (outer loop)

The thread hint in ``control`` only spreads the finite-difference criterion
evaluations of the outer loop over a thread pool. Every evaluation starts
from the same coefficients and results are consumed in submission order,
so the fitted model does not depend on it.
"""

from concurrent.futures import ThreadPoolExecutor

import numpy as np
import pandas as pd
from scipy.linalg import cho_factor, cho_solve, LinAlgError
from scipy.optimize import minimize
from scipy.stats import norm

from foresthealth import config
from foresthealth.graph import check_alignment
from foresthealth.terms import ModelSpec, ParametricTerm, build_basis

DEFAULT_CONTROL = {
    "nthreads": 1,
    "maxit": config.MAXIT_OUTER,
    "maxit_inner": config.MAXIT_INNER,
    "tol": config.TOL_INNER,
    "log_sp_bounds": config.LOG_SP_BOUNDS,
    "allow_unobserved": False,
}

# central-difference step on the log smoothing parameter scale
_FD_STEP = 1e-3
# a stalled line search is accepted when the REML gradient is already this flat
_PG_TOL = 1e-4


class ConvergenceError(RuntimeError):
    """The penalised fit or the smoothing parameter search failed."""


# ---------------- Design ----------------
class _Design:
    """Column layout, penalties and re-evaluation of the model matrix."""

    def __init__(self, spec: ModelSpec, data: pd.DataFrame):
        self.spec = spec
        self.terms = list(spec.parametric) + list(spec.smooths)
        self.bases = {}
        self.slices = {}
        start = 0
        for t in self.terms:
            b = build_basis(t, data)
            self.bases[t.label] = b
            self.slices[t.label] = slice(start, start + len(b.names))
            start += len(b.names)
        self.n_coef = start
        self.names = [nm for t in self.terms for nm in self.bases[t.label].names]

        # Penalties, rescaled so that sp = 1 is a sensible start for every smooth
        X = self.matrix(data)
        self.penalties = []
        for t in spec.smooths:
            sl = self.slices[t.label]
            S = self.bases[t.label].penalty
            Xj = X[:, sl]
            scale = np.linalg.norm(Xj.T @ Xj, 1) / max(np.linalg.norm(S, 1), 1e-300)
            S_scaled = S * scale
            w = np.linalg.eigvalsh(S_scaled)
            tol = w.max() * S.shape[0] * 1e-10
            keep = w > tol
            self.penalties.append({
                "label": t.label,
                "slice": sl,
                "S": S_scaled,
                "scale": scale,
                "rank": int(keep.sum()),
                "logdet": float(np.sum(np.log(w[keep]))),
            })

    def matrix(self, data: pd.DataFrame, exclude=()) -> np.ndarray:
        unknown = sorted(set(exclude) - set(self.bases))
        if unknown:
            raise ValueError(f"Cannot exclude unknown terms {unknown}; model terms are {list(self.bases)}")
        n = len(data)
        X = np.zeros((n, self.n_coef))
        for label, b in self.bases.items():
            if label in exclude:
                continue
            X[:, self.slices[label]] = b.columns(data)
        return X

    def total_penalty(self, sp) -> np.ndarray:
        S = np.zeros((self.n_coef, self.n_coef))
        for lam, pen in zip(sp, self.penalties):
            sl = pen["slice"]
            S[sl, sl] += lam * pen["S"]
        return S


def _response_codes(y: pd.Series, n_classes: int) -> np.ndarray:
    if isinstance(y.dtype, pd.CategoricalDtype):
        if len(y.cat.categories) != n_classes:
            raise ValueError(
                f"Response has {len(y.cat.categories)} categories {list(y.cat.categories)}, "
                f"family expects {n_classes}"
            )
        codes = y.cat.codes.to_numpy()
    else:
        codes = np.asarray(y)
        if not np.issubdtype(codes.dtype, np.integer):
            raise ValueError("Response must be an ordered categorical or integer class codes")
    if (codes < 0).any() or (codes >= n_classes).any():
        row = int(np.flatnonzero((codes < 0) | (codes >= n_classes))[0])
        raise ValueError(f"Response value at row {row} is missing or outside 0..{n_classes - 1}")
    return codes.astype(int)


def _chol_solve(H, g):
    ridge = 0.0
    scale = float(np.mean(np.abs(np.diag(H)))) or 1.0
    for _ in range(8):
        try:
            c = cho_factor(H + ridge * np.eye(H.shape[0]))
            return cho_solve(c, g), c
        except LinAlgError:
            ridge = scale * 1e-10 if ridge == 0.0 else ridge * 100.0
    raise ConvergenceError("Penalised Hessian is not positive definite; the model is not identifiable.")


# ---------------- Inner loop ----------------
class _PenalisedFit:
    """Penalised ML estimates for fixed smoothing parameters."""

    def __init__(self, X, y, family, design, sp, start, maxit, tol):
        self.sp = np.asarray(sp, dtype=float)
        p = X.shape[1]
        S = design.total_penalty(self.sp)
        beta, theta = start[:p].copy(), start[p:].copy()

        def objective(b, t):
            return -family.loglik(X @ b, t, y) + 0.5 * b @ S @ b

        obj = objective(beta, theta)
        self.converged = False
        self.iterations = 0
        for it in range(1, maxit + 1):
            self.iterations = it
            grad, H = self._grad_hess(X, y, family, S, beta, theta)
            step, _ = _chol_solve(H, grad)
            decrement = 0.5 * float(grad @ step)
            if decrement <= tol * (1.0 + abs(obj)):
                self.converged = True
                break
            t = 1.0
            while True:
                nb, nt = beta - t * step[:p], theta - t * step[p:]
                if family.valid_thresholds(nt):
                    new_obj = objective(nb, nt)
                    if np.isfinite(new_obj) and new_obj <= obj:
                        break
                t *= 0.5
                if t < 1e-12:
                    break
            if t < 1e-12:
                # no descent possible: accept only if already at the optimum numerically
                self.converged = decrement <= 1e-6 * (1.0 + abs(obj))
                break
            beta, theta, obj = nb, nt, new_obj

        self.beta, self.theta = beta, theta
        self.grad, self.H = self._grad_hess(X, y, family, S, beta, theta)
        self.grad_norm = float(np.max(np.abs(self.grad)))
        self.loglik = family.loglik(X @ beta, theta, y)
        self.penalty = float(beta @ S @ beta)
        self.S = S

    @staticmethod
    def _grad_hess(X, y, family, S, beta, theta):
        ll, d, d2, gt, het, ht = family.derivatives(X @ beta, theta, y)
        p = X.shape[1]
        K = theta.size
        grad = np.concatenate([-(X.T @ d) + S @ beta, -gt])
        H = np.empty((p + K, p + K))
        H[:p, :p] = -(X.T @ (d2[:, None] * X)) + S
        H[:p, p:] = -(X.T @ het)
        H[p:, :p] = H[:p, p:].T
        H[p:, p:] = -ht
        return grad, H

    @property
    def coef(self):
        return np.concatenate([self.beta, self.theta])


def _projected_gradient(grad, rho, lo, hi) -> float:
    """Largest gradient component that still points inside the box [lo, hi]."""
    g = np.array(grad, dtype=float)
    g[(rho <= lo) & (g > 0)] = 0.0
    g[(rho >= hi) & (g < 0)] = 0.0
    return float(np.max(np.abs(g))) if g.size else 0.0


def _reml_criterion(fit: _PenalisedFit, design: _Design, rho, n_total: int) -> float:
    """Negative Laplace-approximate log marginal likelihood."""
    _, c = _chol_solve(fit.H, np.zeros(fit.H.shape[0]))
    logdet_H = 2.0 * float(np.sum(np.log(np.diag(c[0]))))
    logdet_S = sum(pen["rank"] * r + pen["logdet"] for r, pen in zip(rho, design.penalties))
    null_dim = n_total - sum(pen["rank"] for pen in design.penalties)
    return (-fit.loglik + 0.5 * fit.penalty + 0.5 * logdet_H - 0.5 * logdet_S
            - 0.5 * null_dim * np.log(2 * np.pi))


# ---------------- Fitted model ----------------
class FittedOcatGAM:
    """
    Result of fit(). Read-only after creation.

    Attributes
    ----------
    coef_ : pd.Series         model coefficients (parametric + smooth)
    thresholds_ : np.ndarray  cut points theta_1 < ... < theta_{R-1}
    sp_ : dict                smoothing parameter per smooth label
    edf_ : dict               effective degrees of freedom per smooth label
    Vp_ : np.ndarray          Bayesian posterior covariance of (coef, thresholds)
    loglik_ : float           log-likelihood at the estimates
    reml_ : float             Laplace-approximate log marginal likelihood
    """

    def __init__(self, spec, design, fit, rho, n_obs, optimizer=None):
        self.spec = spec
        self._design = design
        self._beta = fit.beta
        self.thresholds_ = fit.theta.copy()
        self.coef_ = pd.Series(fit.beta, index=design.names, name="coef")
        p = fit.beta.size
        n_total = p + fit.theta.size

        self.Vp_ = np.linalg.inv(fit.H)
        self.Vp_ = 0.5 * (self.Vp_ + self.Vp_.T)
        F = self.Vp_ @ (fit.H - np.pad(fit.S, (0, fit.theta.size)))
        edf = np.diag(F)
        self.edf_total_ = float(edf.sum())

        self.sp_ = {pen["label"]: float(np.exp(r) * pen["scale"]) for r, pen in zip(rho, design.penalties)}
        self.edf_ = {pen["label"]: float(edf[pen["slice"]].sum()) for pen in design.penalties}
        self.rank_ = {pen["label"]: pen["rank"] for pen in design.penalties}
        self.log_sp_ = np.asarray(rho, dtype=float)

        self.loglik_ = float(fit.loglik)
        self.reml_ = -float(_reml_criterion(fit, design, rho, n_total))
        self.n_obs_ = int(n_obs)
        self.iterations_ = fit.iterations
        self.optimizer_ = optimizer

    @property
    def family(self):
        return self.spec.family

    def aic(self) -> float:
        """-2 loglik + 2 edf (cut points count one each)."""
        return -2.0 * self.loglik_ + 2.0 * self.edf_total_

    def linear_predictor(self, data: pd.DataFrame, exclude=()) -> np.ndarray:
        return self._design.matrix(data, exclude) @ self._beta

    def predict(self, data: pd.DataFrame, type: str = "response", exclude=()):
        """
        Predict on new data.

        type="link" gives the latent linear predictor, type="response" the
        (n, R) matrix of class probabilities. Terms named in ``exclude`` (e.g.
        "s(id)") contribute zero and their covariates need not be meaningful.
        """
        exclude = tuple([exclude] if isinstance(exclude, str) else exclude)
        eta = self.linear_predictor(data, exclude)
        if type == "link":
            return eta
        if type == "response":
            return self.family.probabilities(eta, self.thresholds_)
        raise ValueError(f"type must be 'response' or 'link', got {type!r}")

    def smooth_estimate(self, label: str, n: int = 100, width: float = 0.95,
                        with_mean: bool = False) -> pd.DataFrame:
        """
        Fitted smooth with a pointwise credible band.

        For P-splines the curve is evaluated on an n-point grid over the
        covariate range; for MRF smooths there is one row per graph unit.
        with_mean adds the uncertainty of the latent intercept (-theta_1),
        which keeps the band from collapsing to zero width where a heavily
        penalised smooth crosses zero.
        """
        if label not in self._design.bases or isinstance(self._design.bases[label].term, ParametricTerm):
            smooths = [t.label for t in self.spec.smooths]
            raise ValueError(f"{label!r} is not a smooth term of this model (smooths: {smooths})")
        basis = self._design.bases[label]
        sl = self._design.slices[label]
        cov = basis.term.covariate

        if basis.term.basis == "mrf":
            Xj = basis.unit_columns()
            frame = pd.DataFrame({cov: basis.units})
        else:
            lo, hi = basis.range
            grid = np.linspace(lo, hi, n)
            frame = pd.DataFrame({cov: grid})
            Xj = basis.columns(frame)

        L = np.zeros((Xj.shape[0], self.Vp_.shape[0]))
        L[:, sl] = Xj
        if with_mean:
            L[:, self._beta.size] = -1.0
        fit = Xj @ self._beta[sl]
        se = np.sqrt(np.maximum(np.einsum("ij,jk,ik->i", L, self.Vp_, L), 0.0))
        z = norm.ppf(0.5 + width / 2.0)
        frame["fit"] = fit
        frame["se"] = se
        frame["lower"] = fit - z * se
        frame["upper"] = fit + z * se
        return frame

    def summary(self):
        """(parametric table, smooth table) as DataFrames."""
        p = self._beta.size
        se = np.sqrt(np.diag(self.Vp_))
        names = []
        est = []
        ses = []
        for t in self.spec.parametric:
            sl = self._design.slices[t.label]
            names += self._design.names[sl]
            est += list(self._beta[sl])
            ses += list(se[sl])
        for k, th in enumerate(self.thresholds_):
            names.append(f"theta{k + 1}")
            est.append(th)
            ses.append(se[p + k])
        est, ses = np.asarray(est, dtype=float), np.asarray(ses, dtype=float)
        z = est / ses
        param = pd.DataFrame(
            {"estimate": est, "se": ses, "z": z, "p_value": 2 * norm.sf(np.abs(z))},
            index=pd.Index(names, name="term"),
        )
        smooth = pd.DataFrame(
            {"edf": pd.Series(self.edf_), "sp": pd.Series(self.sp_), "rank": pd.Series(self.rank_)}
        )
        smooth.index.name = "term"
        return param, smooth

    def __repr__(self):
        return (f"FittedOcatGAM({self.spec}, n={self.n_obs_}, "
                f"edf={self.edf_total_:.2f}, AIC={self.aic():.2f})")


# ---------------- Public entry point ----------------
def fit(spec: ModelSpec, data: pd.DataFrame, method: str = "REML", control: dict | None = None,
        verbose: bool = False) -> FittedOcatGAM:
    """
    Fit ``spec`` to ``data``; smoothing parameters are selected by REML.

    control keys: nthreads (speed hint only), maxit (outer iterations),
    maxit_inner, tol (inner convergence), log_sp_bounds, allow_unobserved
    (graph vertices without data in MRF smooths).
    """
    if method != "REML":
        raise ValueError(f"Only method='REML' is supported, got {method!r}")
    ctrl = dict(DEFAULT_CONTROL)
    unknown = sorted(set(control or {}) - set(ctrl))
    if unknown:
        raise ValueError(f"Unknown control keys: {unknown}")
    ctrl.update(control or {})

    need = [spec.response, *spec.covariates]
    missing = [c for c in need if c not in data.columns]
    if missing:
        raise ValueError(f"Data missing columns: {missing}")

    # MRF smooths: the graph has to describe exactly the units in the data
    for t in spec.smooths:
        if t.basis == "mrf":
            check_alignment(data[t.covariate], t.neighbors, allow_unobserved=ctrl["allow_unobserved"])

    family = spec.family
    y = _response_codes(data[spec.response], family.n_classes)
    design = _Design(spec, data)
    X = design.matrix(data)
    n_total = design.n_coef + family.n_thresholds
    start = np.concatenate([np.zeros(design.n_coef), family.initial_thresholds(y)])
    m = len(design.penalties)

    def inner(rho):
        return _PenalisedFit(X, y, family, design, np.exp(rho), start,
                             ctrl["maxit_inner"], ctrl["tol"])

    def criterion(rho):
        return _reml_criterion(inner(rho), design, rho, n_total)

    optimizer = None
    if m == 0:
        rho_hat = np.zeros(0)
    else:
        lo, hi = ctrl["log_sp_bounds"]
        nthreads = max(1, int(ctrl["nthreads"]))
        with ThreadPoolExecutor(max_workers=nthreads) as pool:
            def gradient(rho):
                pts = []
                for j in range(m):
                    e = np.zeros(m)
                    e[j] = _FD_STEP
                    pts += [rho + e, rho - e]
                vals = list(pool.map(criterion, pts))
                return np.array([(vals[2 * j] - vals[2 * j + 1]) / (2 * _FD_STEP) for j in range(m)])

            optimizer = minimize(
                criterion, np.zeros(m), jac=gradient, method="L-BFGS-B",
                bounds=[(lo, hi)] * m, options={"maxiter": int(ctrl["maxit"])},
            )
        rho_hat = np.asarray(optimizer.x, dtype=float)
        pg = _projected_gradient(optimizer.jac, rho_hat, lo, hi)
        if not optimizer.success and not (
            "LNSRCH" in str(optimizer.message) and pg <= _PG_TOL * (1.0 + abs(optimizer.fun))
        ):
            raise ConvergenceError(
                f"Smoothing parameter search did not converge after {optimizer.nit} iterations "
                f"({optimizer.message}); max |projected gradient| = {pg:.3g} for {spec}."
            )
        if verbose:
            print(f"[info] REML search: {optimizer.nit} iterations, criterion={optimizer.fun:.4f} "
                  f"({optimizer.message})")

    final = inner(rho_hat)
    if not final.converged:
        raise ConvergenceError(
            f"Penalised fit did not converge after {final.iterations} Newton iterations "
            f"(max |gradient| = {final.grad_norm:.3g}) for {spec}."
        )
    model = FittedOcatGAM(spec, design, final, rho_hat, len(data), optimizer)
    if verbose:
        print(f"[OK] Fitted {spec.response} ~ {' + '.join(spec.labels)}: "
              f"loglik={model.loglik_:.3f}, edf={model.edf_total_:.2f}, AIC={model.aic():.3f}")
    return model
