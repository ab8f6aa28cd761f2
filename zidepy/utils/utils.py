import math

import numpy as np
from joblib import Parallel, delayed
from numba import jit
from tqdm import tqdm


@jit(nopython=True)
def _nb_logpmf_kernel(y, mu, disp, out):
    """
    Negative binomial log-probability for flat arrays

    Parameters
    ----------
    y : numpy.ndarray
        Counts
    mu : numpy.ndarray
        Means (strictly positive)
    disp : numpy.ndarray
        Dispersions, Var = mu + disp * mu^2
    out : numpy.ndarray
        Output buffer
    """
    for k in range(y.shape[0]):
        yk = y[k]
        mk = mu[k]
        dk = disp[k]
        if dk < 1e-10:
            # Poisson limit
            val = -mk - math.lgamma(yk + 1.0)
            if yk > 0:
                val += yk * math.log(mk)
        elif dk < 1e-4 and yk < 1e5:
            # lgamma(y + r) - lgamma(r) cancels badly for large r
            r = 1.0 / dk
            val = -r * math.log1p(mk * dk) - math.lgamma(yk + 1.0)
            if yk > 0:
                val += yk * math.log(mk)
                for j in range(int(yk)):
                    val += math.log1p((j - mk) / (r + mk))
        else:
            r = 1.0 / dk
            val = (math.lgamma(yk + r) - math.lgamma(r) - math.lgamma(yk + 1.0)
                   - r * math.log1p(mk * dk))
            if yk > 0:
                val += yk * math.log(mk / (r + mk))
        out[k] = val


def nb_logpmf(y, mu, dispersion):
    """
    Elementwise negative binomial log-probability with broadcasting

    Parameters
    ----------
    y : array-like
        Counts
    mu : array-like
        Means
    dispersion : array-like
        Dispersions

    Returns
    -------
    numpy.ndarray
        Log-probabilities with the broadcast shape of the inputs
    """
    y, mu, disp = np.broadcast_arrays(
        np.asarray(y, dtype=np.float64),
        np.asarray(mu, dtype=np.float64),
        np.asarray(dispersion, dtype=np.float64),
    )
    shape = y.shape
    out = np.empty(y.size, dtype=np.float64)
    _nb_logpmf_kernel(
        np.ascontiguousarray(y).ravel(),
        np.ascontiguousarray(mu).ravel(),
        np.ascontiguousarray(disp).ravel(),
        out,
    )
    return out.reshape(shape)


def nb_log_p0(mu, dispersion):
    """Log-probability of a zero under NB(mu, dispersion)."""
    mu = np.asarray(mu, dtype=np.float64)
    dispersion = np.asarray(dispersion, dtype=np.float64)
    with np.errstate(divide="ignore", invalid="ignore"):
        out = -np.log1p(dispersion * mu) / dispersion
    return np.where(dispersion < 1e-10, -mu, out)


def geometric_mean(x, axis=None):
    """Geometric mean of positive values."""
    return np.exp(np.mean(np.log(x), axis=axis))


def batched_wls(X, W, Z, penalty=None, ridge=1e-10):
    """
    Weighted least squares for many units sharing one design

    Solves (X' W_u X + diag(penalty)) b_u = X' W_u z_u for every unit u.

    Parameters
    ----------
    X : numpy.ndarray
        Shared design with shape (n, p)
    W : numpy.ndarray
        Working weights with shape (units, n)
    Z : numpy.ndarray
        Working responses with shape (units, n)
    penalty : numpy.ndarray, optional
        Ridge penalty per coefficient, shape (p,)
    ridge : float
        Small constant added to the diagonal for numerical stability

    Returns
    -------
    numpy.ndarray
        Coefficients with shape (units, p)
    """
    p = X.shape[1]
    XtWX = np.einsum("un,np,nq->upq", W, X, X)
    XtWz = np.einsum("un,np->up", W * Z, X)
    diag = np.full(p, ridge)
    if penalty is not None:
        diag = diag + np.asarray(penalty, dtype=np.float64)
    XtWX = XtWX + np.diag(diag)[None, :, :]
    return np.linalg.solve(XtWX, XtWz[..., None])[..., 0]


def map_genes(func, records, n_jobs=1, desc=None, silent=True):
    """
    Apply ``func`` to every gene record, optionally in parallel

    Parameters
    ----------
    func : callable
        Function of one record; must be picklable for ``n_jobs != 1``
    records : list
        Per-gene records carrying their own slices of the shared inputs
    n_jobs : int
        Number of workers; 1 runs sequentially, -1 uses all cores
    desc : str, optional
        Progress bar label
    silent : bool
        Disable the progress bar

    Returns
    -------
    list
        Results in record order
    """
    iterator = tqdm(records, desc=desc, disable=silent)
    if n_jobs != 1 and len(records) > 10:
        return Parallel(n_jobs=n_jobs, backend="loky")(
            delayed(func)(record) for record in iterator
        )
    return [func(record) for record in iterator]


def merge_control(defaults, control=None):
    """
    Fill missing control parameters with defaults

    Parameters
    ----------
    defaults : dict
        Default control parameters
    control : dict, optional
        User supplied parameters

    Returns
    -------
    dict
        Merged parameters
    """
    merged = dict(defaults)
    if control is None:
        return merged
    unknown = set(control) - set(defaults)
    if unknown:
        raise ValueError(f"Unknown control parameters: {sorted(unknown)}")
    merged.update(control)
    return merged
