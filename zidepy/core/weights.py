"""
Zero-inflated negative binomial factor model and observation weights.

Each count y_ij (gene i, cell j) is a structural zero with probability
pi_ij or a draw from NB(mu_ij, phi_i), with

    log mu_ij   = X_j . beta_i + gamma_j + W_j . alpha_i
    logit pi_ij = zeta_i + delta_j + W_j . kappa_i

The model is fitted by generalized EM. Every iteration produces a new
immutable ``ZinbParams`` snapshot; the E-step posterior probability that an
observation is a genuine NB draw is the observation weight used by the
downstream weighted GLM.
"""

import logging
from dataclasses import dataclass, replace

import numpy as np
import pandas as pd
from scipy.special import expit
from sklearn.decomposition import TruncatedSVD

from ..exceptions import InputValidationError
from ..utils.utils import batched_wls, nb_log_p0, nb_logpmf
from .count_matrix import CountMatrix

logger = logging.getLogger(__name__)

ETA_BOUND = 30.0
LOGIT_BOUND = 20.0
_INVPHI = (np.sqrt(5.0) - 1.0) / 2.0


@dataclass(frozen=True)
class ZinbParams:
    """Parameter snapshot of the ZINB model."""

    beta_mu: np.ndarray   # genes x p, cell covariate coefficients
    gamma_mu: np.ndarray  # cells, per-cell mean effect
    alpha_mu: np.ndarray  # genes x K, latent loadings of the mean
    W: np.ndarray         # cells x K, latent cell factors
    beta_pi: np.ndarray   # genes, zero-inflation intercepts
    gamma_pi: np.ndarray  # cells, per-cell zero-inflation effect
    alpha_pi: np.ndarray  # genes x K, latent loadings of the logit
    log_disp: np.ndarray  # genes

    def log_mu(self, X):
        eta = self.beta_mu @ X.T + self.gamma_mu[None, :] + self.alpha_mu @ self.W.T
        return np.clip(eta, -ETA_BOUND, ETA_BOUND)

    def logit_pi(self):
        eta = self.beta_pi[:, None] + self.gamma_pi[None, :] + self.alpha_pi @ self.W.T
        return np.clip(eta, -LOGIT_BOUND, LOGIT_BOUND)

    @property
    def dispersion(self):
        return np.exp(self.log_disp)


@dataclass(frozen=True)
class ZinbFit:
    """Result of :func:`zinb_weights`."""

    weights: np.ndarray
    mu: np.ndarray
    pi: np.ndarray
    dispersion: np.ndarray
    params: ZinbParams
    loglik: np.ndarray
    n_iter: int
    converged: bool

    @property
    def W(self):
        """Latent cell factors (cells x K)."""
        return self.params.W


def _nb_part(Y, w, log_mu, disp):
    return w * nb_logpmf(Y, np.exp(log_mu), disp[:, None])


def _pi_part(z, logit):
    return -(z * np.logaddexp(0.0, -logit) + (1.0 - z) * np.logaddexp(0.0, logit))


def _zinb_loglik(Y, log_mu, logit, disp):
    log_pi = -np.logaddexp(0.0, -logit)
    log_1mpi = -np.logaddexp(0.0, logit)
    log_nb0 = log_1mpi + nb_log_p0(np.exp(log_mu), disp[:, None])
    ll = np.where(
        Y == 0,
        np.logaddexp(log_pi, log_nb0),
        log_1mpi + nb_logpmf(Y, np.exp(log_mu), disp[:, None]),
    )
    return float(ll.sum())


def _posterior_weights(Y, log_mu, logit, disp):
    """P(not dropout | y); exactly 1 for positive counts."""
    log_pi = -np.logaddexp(0.0, -logit)
    log_nb0 = -np.logaddexp(0.0, logit) + nb_log_p0(np.exp(log_mu), disp[:, None])
    w0 = np.exp(log_nb0 - np.logaddexp(log_pi, log_nb0))
    return np.where(Y > 0, 1.0, np.clip(w0, 0.0, 1.0))


def _penalty(params, lam_mu, lam_logit, intercept):
    pen_beta = np.delete(params.beta_mu, intercept, axis=1)
    mu_terms = (
        np.sum(pen_beta ** 2) + np.sum(params.gamma_mu ** 2) + np.sum(params.alpha_mu ** 2)
        + np.sum(params.W ** 2) + np.sum(params.log_disp ** 2)
    )
    pi_terms = np.sum(params.beta_pi ** 2) + np.sum(params.gamma_pi ** 2) + np.sum(params.alpha_pi ** 2)
    return lam_mu * mu_terms + lam_logit * pi_terms


def _objective(Y, X, params, lam_mu, lam_logit, intercept):
    ll = _zinb_loglik(Y, params.log_mu(X), params.logit_pi(), params.dispersion)
    return ll - _penalty(params, lam_mu, lam_logit, intercept)


def _accept_improving(old, new, objective, max_halving=8):
    """
    Step-halving line search applied unit by unit

    Parameters
    ----------
    old, new : numpy.ndarray
        Current and proposed coefficients; first axis indexes units
    objective : callable
        Maps coefficients to a per-unit objective value

    Returns
    -------
    numpy.ndarray
        Coefficients that never decrease the per-unit objective
    """
    base = objective(old)
    out = old.copy()
    pending = np.ones(old.shape[0], dtype=bool)
    step = 1.0
    cand = new
    for _ in range(max_halving):
        val = objective(cand)
        ok = pending & np.isfinite(val) & (val >= base - 1e-10)
        out[ok] = cand[ok]
        pending &= ~ok
        if not pending.any():
            break
        step /= 2.0
        cand = old + step * (new - old)
    return out


def _irls_nb(Y, w, eta, offset, disp):
    mu = np.exp(eta)
    working_w = w * mu / (1.0 + disp[:, None] * mu)
    working_z = (eta - offset) + (Y - mu) / mu
    return working_w, working_z


def _irls_logistic(z, eta, offset):
    p = expit(eta)
    working_w = np.maximum(p * (1.0 - p), 1e-10)
    working_z = (eta - offset) + (z - p) / working_w
    return working_w, working_z


def _update_gene_mean(Y, X, params, w, lam_mu, intercept):
    Xg = np.column_stack([X, params.W])
    p = X.shape[1]
    coef = np.column_stack([params.beta_mu, params.alpha_mu])
    penalty = np.full(Xg.shape[1], lam_mu)
    penalty[intercept] = 0.0
    disp = params.dispersion
    offset = np.broadcast_to(params.gamma_mu[None, :], Y.shape)

    working_w, working_z = _irls_nb(Y, w, params.log_mu(X), offset, disp)
    proposal = batched_wls(Xg, working_w, working_z, penalty)

    def objective(c):
        log_mu = np.clip(c @ Xg.T + offset, -ETA_BOUND, ETA_BOUND)
        return _nb_part(Y, w, log_mu, disp).sum(axis=1) - np.sum(penalty * c ** 2, axis=1)

    coef = _accept_improving(coef, proposal, objective)
    return replace(params, beta_mu=coef[:, :p], alpha_mu=coef[:, p:])


def _update_cell_mean(Y, X, params, w, lam_mu):
    G = Y.shape[0]
    Xc = np.column_stack([np.ones(G), params.alpha_mu])
    coef = np.column_stack([params.gamma_mu, params.W])
    penalty = np.full(Xc.shape[1], lam_mu)
    disp = params.dispersion
    offset = params.beta_mu @ X.T
    z = 1.0 - w

    working_w, working_z = _irls_nb(Y, w, params.log_mu(X), offset, disp)
    proposal = batched_wls(Xc, working_w.T, working_z.T, penalty)

    def objective(c):
        Wn = c[:, 1:]
        log_mu = np.clip(offset + c[:, 0][None, :] + params.alpha_mu @ Wn.T, -ETA_BOUND, ETA_BOUND)
        logit = np.clip(
            params.beta_pi[:, None] + params.gamma_pi[None, :] + params.alpha_pi @ Wn.T,
            -LOGIT_BOUND, LOGIT_BOUND,
        )
        val = (_nb_part(Y, w, log_mu, disp) + _pi_part(z, logit)).sum(axis=0)
        return val - np.sum(penalty * c ** 2, axis=1)

    coef = _accept_improving(coef, proposal, objective)
    return replace(params, gamma_mu=coef[:, 0], W=coef[:, 1:])


def _update_gene_pi(params, w, lam_logit):
    n = w.shape[1]
    Xp = np.column_stack([np.ones(n), params.W])
    coef = np.column_stack([params.beta_pi, params.alpha_pi])
    penalty = np.full(Xp.shape[1], lam_logit)
    offset = np.broadcast_to(params.gamma_pi[None, :], w.shape)
    z = 1.0 - w

    working_w, working_z = _irls_logistic(z, params.logit_pi(), offset)
    proposal = batched_wls(Xp, working_w, working_z, penalty)

    def objective(c):
        logit = np.clip(c @ Xp.T + offset, -LOGIT_BOUND, LOGIT_BOUND)
        return _pi_part(z, logit).sum(axis=1) - np.sum(penalty * c ** 2, axis=1)

    coef = _accept_improving(coef, proposal, objective)
    return replace(params, beta_pi=coef[:, 0], alpha_pi=coef[:, 1:])


def _update_cell_pi(params, w, lam_logit):
    G = w.shape[0]
    Xq = np.ones((G, 1))
    coef = params.gamma_pi[:, None]
    penalty = np.array([lam_logit])
    offset = params.beta_pi[:, None] + params.alpha_pi @ params.W.T
    z = 1.0 - w

    working_w, working_z = _irls_logistic(z, params.logit_pi(), offset)
    proposal = batched_wls(Xq, working_w.T, working_z.T, penalty)

    def objective(c):
        logit = np.clip(offset + c[:, 0][None, :], -LOGIT_BOUND, LOGIT_BOUND)
        return _pi_part(z, logit).sum(axis=0) - lam_logit * c[:, 0] ** 2

    coef = _accept_improving(coef, proposal, objective)
    return replace(params, gamma_pi=coef[:, 0])


def _update_dispersion(Y, X, params, w, lam_mu, bounds, n_grid=25, n_golden=20):
    """
    Per-gene weighted NB maximum likelihood for log-dispersion

    Brute-force grid search followed by golden-section refinement,
    vectorised over genes.
    """
    mu = np.exp(params.log_mu(X))
    lo, hi = np.log(bounds[0]), np.log(bounds[1])

    def q(log_disp):
        # log_disp: genes x m
        ll = w[:, :, None] * nb_logpmf(Y[:, :, None], mu[:, :, None], np.exp(log_disp)[:, None, :])
        return ll.sum(axis=1) - lam_mu * log_disp ** 2

    G = Y.shape[0]
    grid = np.linspace(lo, hi, n_grid)
    vals = np.empty((G, n_grid))
    for j in range(n_grid):
        vals[:, j] = q(np.full((G, 1), grid[j]))[:, 0]
    k = np.argmax(vals, axis=1)
    a = grid[np.maximum(k - 1, 0)]
    b = grid[np.minimum(k + 1, n_grid - 1)]

    c = b - _INVPHI * (b - a)
    d = a + _INVPHI * (b - a)
    fc = q(c[:, None])[:, 0]
    fd = q(d[:, None])[:, 0]
    for _ in range(n_golden):
        left = fc > fd
        a = np.where(left, a, c)
        b = np.where(left, d, b)
        new_c = b - _INVPHI * (b - a)
        new_d = a + _INVPHI * (b - a)
        c, d = np.where(left, new_c, d), np.where(left, c, new_d)
        fc_new = q(c[:, None])[:, 0]
        fd_new = q(d[:, None])[:, 0]
        fc, fd = np.where(left, fc_new, fd), np.where(left, fc, fd_new)

    candidate = (a + b) / 2.0
    better = q(candidate[:, None])[:, 0] >= q(params.log_disp[:, None])[:, 0]
    return replace(params, log_disp=np.where(better, candidate, params.log_disp))


def _recenter(params, intercept):
    shift_mu = params.gamma_mu.mean()
    shift_pi = params.gamma_pi.mean()
    beta_mu = params.beta_mu.copy()
    beta_mu[:, intercept] += shift_mu
    return replace(
        params,
        beta_mu=beta_mu,
        gamma_mu=params.gamma_mu - shift_mu,
        beta_pi=params.beta_pi + shift_pi,
        gamma_pi=params.gamma_pi - shift_pi,
    )


def _m_step(Y, X, params, w, lam_mu, lam_logit, intercept, disp_bounds):
    params = _update_gene_mean(Y, X, params, w, lam_mu, intercept)
    params = _update_cell_mean(Y, X, params, w, lam_mu)
    params = _recenter(params, intercept)
    params = _update_gene_pi(params, w, lam_logit)
    params = _update_cell_pi(params, w, lam_logit)
    params = _recenter(params, intercept)
    return _update_dispersion(Y, X, params, w, lam_mu, disp_bounds)


def _initialize(Y, X, K, intercept, random_state, disp_bounds):
    G, n = Y.shape
    lib = Y.sum(axis=0)
    log_sf = np.log(lib) - np.mean(np.log(lib))
    L = np.log1p(Y / np.exp(log_sf)[None, :])

    beta_mu = batched_wls(X, np.ones((G, n)), L)
    resid = L - beta_mu @ X.T
    if K > 0:
        svd = TruncatedSVD(n_components=K, random_state=random_state)
        scores = svd.fit_transform(resid.T)
        scale = np.sqrt(np.maximum(svd.singular_values_, 1e-12))
        W = scores / scale[None, :]
        alpha_mu = svd.components_.T * scale[None, :]
    else:
        W = np.zeros((n, 0))
        alpha_mu = np.zeros((G, 0))

    norm = Y / np.exp(log_sf)[None, :]
    m = norm.mean(axis=1)
    v = norm.var(axis=1, ddof=1)
    disp = np.clip((v - m) / np.maximum(m, 1e-8) ** 2, disp_bounds[0] * 10, 10.0)

    # log-scale intercepts from the mean of normalised counts
    beta_mu = beta_mu.copy()
    beta_mu[:, intercept] += np.log(np.maximum(m, 1e-8)) - np.log(
        np.maximum(np.exp(beta_mu @ X.T).mean(axis=1), 1e-8)
    )

    params = ZinbParams(
        beta_mu=beta_mu,
        gamma_mu=log_sf,
        alpha_mu=alpha_mu,
        W=W,
        beta_pi=np.zeros(G),
        gamma_pi=np.zeros(n),
        alpha_pi=np.zeros((G, K)),
        log_disp=np.log(disp),
    )
    p0 = np.exp(nb_log_p0(np.exp(params.log_mu(X)), disp[:, None])).mean(axis=1)
    excess = np.clip(np.mean(Y == 0, axis=1) - p0, 1e-2, 0.5)
    return replace(params, beta_pi=np.log(excess / (1.0 - excess)))


def _as_covariates(X, n):
    """Return (X, index of intercept column)."""
    if X is None:
        return np.ones((n, 1)), 0
    X = np.asarray(X.values if isinstance(X, pd.DataFrame) else X, dtype=np.float64)
    if X.ndim != 2 or X.shape[0] != n:
        raise InputValidationError(f"X must have shape (n_cells, p); got {X.shape}")
    ones = np.where(np.all(X == 1.0, axis=0))[0]
    if len(ones) == 0:
        return np.column_stack([np.ones(n), X]), 0
    return X, int(ones[0])


def zinb_weights(
    counts,
    X=None,
    K=0,
    epsilon=1e12,
    epsilon_min_logit=1e-3,
    max_iter=50,
    tol=1e-4,
    random_state=0,
    disp_bounds=(1e-4, 1e3),
):
    """
    Fit the ZINB model and compute observation weights

    Parameters
    ----------
    counts : CountMatrix or numpy.ndarray
        Counts with shape (n_genes, n_cells); genes without expression are
        rejected
    X : numpy.ndarray or pandas.DataFrame, optional
        Cell-level covariates (n_cells, p); an intercept is added when absent
    K : int
        Number of latent factors; 0 keeps only gene and cell effects
    epsilon : float
        Ridge constant; mean-model coefficients, cell effects, latent factors
        and log-dispersions carry penalty 1 / epsilon
    epsilon_min_logit : float
        Penalty on the zero-inflation logit coefficients, applied whatever
        ``epsilon`` is
    max_iter : int
        Maximum number of EM iterations
    tol : float
        Relative tolerance on the penalized log-likelihood
    random_state : int
        Seed of the truncated SVD initialisation
    disp_bounds : tuple
        Bounds of the dispersion search

    Returns
    -------
    ZinbFit
        Weights and the best parameter snapshot; ``converged`` is False when
        ``max_iter`` was reached first
    """
    Y = counts.assay() if isinstance(counts, CountMatrix) else np.asarray(counts)
    Y = np.asarray(Y, dtype=np.float64)
    if Y.ndim != 2:
        raise InputValidationError("counts must be a genes x cells matrix")
    G, n = Y.shape

    zero_genes = ~np.any(Y > 0, axis=1)
    if zero_genes.any():
        raise InputValidationError(
            f"{int(zero_genes.sum())} genes have no expression; filter them before fitting"
        )
    if np.any(Y.sum(axis=0) == 0):
        raise InputValidationError("cells with zero total counts must be removed before fitting")
    if not 0 <= K < min(G, n):
        raise InputValidationError(f"K must be in [0, {min(G, n) - 1}], got {K}")
    if epsilon <= 0 or epsilon_min_logit < 0:
        raise InputValidationError("regularization constants must be positive")

    X, intercept = _as_covariates(X, n)
    lam_mu = 1.0 / epsilon
    lam_logit = epsilon_min_logit

    params = _initialize(Y, X, K, intercept, random_state, disp_bounds)
    obj = _objective(Y, X, params, lam_mu, lam_logit, intercept)
    best_obj, best = obj, params
    history = [obj]
    converged = False
    n_iter = 0

    for n_iter in range(1, max_iter + 1):
        w = _posterior_weights(Y, params.log_mu(X), params.logit_pi(), params.dispersion)
        params = _m_step(Y, X, params, w, lam_mu, lam_logit, intercept, disp_bounds)
        new_obj = _objective(Y, X, params, lam_mu, lam_logit, intercept)
        history.append(new_obj)
        logger.debug("ZINB iteration %d: penalized log-likelihood %.6f", n_iter, new_obj)
        if new_obj > best_obj:
            best_obj, best = new_obj, params
        if abs(new_obj - obj) <= tol * (abs(obj) + tol):
            converged = True
            break
        obj = new_obj

    if converged:
        logger.info("ZINB model converged after %d iterations", n_iter)
    else:
        logger.warning(
            "ZINB model did not converge in %d iterations; returning best iterate", max_iter
        )

    log_mu = best.log_mu(X)
    logit = best.logit_pi()
    weights = _posterior_weights(Y, log_mu, logit, best.dispersion)
    weights.setflags(write=False)
    return ZinbFit(
        weights=weights,
        mu=np.exp(log_mu),
        pi=expit(logit),
        dispersion=best.dispersion,
        params=best,
        loglik=np.asarray(history),
        n_iter=n_iter,
        converged=converged,
    )
