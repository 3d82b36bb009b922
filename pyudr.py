import numbers
import numpy as np
import scipy.linalg
import time
import warnings

import logging
logger = logging.getLogger("pyudr")

# set up multiprocessing
import multiprocessing
import parmap

# families of prior covariance matrices
COVTYPES = ("scaled", "rank1", "unconstrained")

# terminal states of a call to fit()
CONVERGED = "converged"
MAXITER = "maxiter"

# update modes accepted for each setting in the control dictionary
_update_modes = {
    "weights_update": ("em", "none"),
    "resid_update": ("em", "none"),
    "scaled_update": ("em", "none"),
    "rank1_update": ("teem", "none"),
    "unconstrained_update": ("ed", "teem", "none"),
}

# components with less posterior mass than this keep their covariance
_min_mass = np.finfo(float).eps

# relative eigenvalue cutoff defining the column space of a scaled matrix
_rank_tol = 1e-10


class ValidationError(ValueError):
    """Malformed data matrix, residual or prior covariances."""
    pass

class ConfigurationError(ValueError):
    """Unknown or unsupported settings in the control dictionary."""
    pass

class NumericalError(RuntimeError):
    """A covariance matrix is not positive definite where it has to be."""
    pass


def fit_control_default():
    """Default settings of the EM updates used by init() and fit().

    Returns:
        dict with the keys
            weights_update: "em" or "none"
            resid_update: "em" or "none"
            scaled_update: "em" or "none"
            rank1_update: "teem" or "none"
            unconstrained_update: "ed", "teem" or "none"
            maxiter (int): maximum number of EM iterations per fit() call
            tol (float): convergence tolerance on the largest parameter change
            minval (float): smallest eigenvalue allowed in U and V
            processes (int): worker processes, 1 runs serially, None uses all CPUs
    """
    return {"weights_update": "em",
            "resid_update": "em",
            "scaled_update": "em",
            "rank1_update": "teem",
            "unconstrained_update": "ed",
            "maxiter": 20,
            "tol": 1e-6,
            "minval": -1e-8,
            "processes": 1}

def _merge_control(control=None):
    # merge user settings onto the defaults and reject anything unsupported
    settings = fit_control_default()
    if control is not None:
        unknown = set(control.keys()) - set(settings.keys())
        if unknown:
            raise ConfigurationError("unknown control settings: %s" % ", ".join(sorted(unknown)))
        settings.update(control)
    for key, modes in _update_modes.items():
        if settings[key] not in modes:
            raise ConfigurationError("%s should be one of %r, got %r" % (key, modes, settings[key]))
    maxiter = settings["maxiter"]
    if not (_is_real(maxiter) and np.isfinite(maxiter) and int(maxiter) == maxiter and maxiter >= 0):
        raise ConfigurationError("maxiter should be a non-negative integer, got %r" % (maxiter,))
    settings["maxiter"] = int(maxiter)
    tol = settings["tol"]
    if not (_is_real(tol) and 0 < tol < np.inf):
        raise ConfigurationError("tol should be a positive number, got %r" % (tol,))
    minval = settings["minval"]
    if not (_is_real(minval) and np.isfinite(minval)):
        raise ConfigurationError("minval should be a finite number, got %r" % (minval,))
    processes = settings["processes"]
    if processes is not None and not (_is_real(processes) and np.isfinite(processes) and int(processes) == processes and processes >= 1):
        raise ConfigurationError("processes should be a positive integer or None, got %r" % (processes,))
    return settings

def _is_real(x):
    return isinstance(x, numbers.Real) and not isinstance(x, bool)


############################
# Numerical primitives
############################

def softmax(x, axis=-1):
    """Normalized exponentials exp(x)/sum(exp(x)) along given axis.

    The maximum is subtracted before exponentiating to avoid overflow;
    entries of -inf get probability 0.

    Args:
        x: numpy array of log-weights
        axis (int): axis to normalize over

    Returns:
        numpy array of the same shape as x, summing to 1 along axis
    """
    x = np.asarray(x, dtype=float)
    y = np.exp(x - x.max(axis=axis, keepdims=True))
    return y / y.sum(axis=axis, keepdims=True)


def safenormalize(x):
    """Return x/sum(x), or the uniform distribution if sum(x) <= 0."""
    x = np.asarray(x, dtype=float)
    total = x.sum()
    if total <= 0:
        return np.ones(x.size) / x.size
    return x / total


def logsum(logX, axis=0):
    """Computes log of the sum along give axis from the log of the summands.

    This method tries hard to avoid over- or underflow.
    See appendix A of Bovy, Hogg, Roweis (2009).
    Summands of -inf (e.g. from components with zero weight) are allowed
    as long as each sum has at least one finite summand.

    Args:
        logX: numpy array of logarithmic summands
        axis (int): axis to sum over

    Returns:
        log of the sum, shortened by one axis

    Throws:
        ValueError if logX has length 0 along given axis

    """
    floatinfo = np.finfo(logX.dtype)
    underflow = np.log(floatinfo.tiny) - logX.min(axis=axis)
    overflow = np.log(floatinfo.max) - logX.max(axis=axis) - np.log(logX.shape[axis])
    c = np.where(underflow < overflow, underflow, overflow)
    # adjust the shape of c for addition with logX
    c_shape = [slice(None) for i in range(len(logX.shape))]
    c_shape[axis] = None
    return np.log(np.exp(logX + c[tuple(c_shape)]).sum(axis=axis)) - c


def cholesky(S):
    """Lower Cholesky factor L of S = L L^T.

    Args:
        S: numpy array (D, D) or stack (N, D, D) of covariance matrices

    Returns:
        numpy array of the same shape as S

    Throws:
        NumericalError if S (or any matrix in the stack) is not positive definite
    """
    try:
        return np.linalg.cholesky(S)
    except np.linalg.LinAlgError:
        raise NumericalError("covariance matrix is not positive definite, Cholesky factorization failed")


def ldmvnorm(x, L):
    """Log-density of a zero-mean multivariate normal.

    Computes -|L^-1 x|^2/2 - sum_d log(sqrt(2 pi) L_dd), i.e. log N(x; 0, S)
    with S = L L^T.

    Args:
        x: numpy array (D,) or (N, D) of coordinates
        L: numpy array (D, D) lower Cholesky factor shared by all x, or
            (N, D, D) with one factor for each row of x

    Returns:
        float or numpy array (N,)
    """
    if L.ndim == 2:
        z = scipy.linalg.solve_triangular(L, x.T, lower=True).T
        logdet = np.log(np.sqrt(2*np.pi) * np.diag(L)).sum()
    else:
        z = np.linalg.solve(L, x[..., None])[..., 0]
        logdet = np.log(np.sqrt(2*np.pi) * np.diagonal(L, axis1=-2, axis2=-1)).sum(axis=-1)
    return -(z**2).sum(axis=-1)/2 - logdet


def psd_floor(S, minval=0):
    """Clip the eigenvalues of the symmetrized S from below at minval.

    numpy.linalg.eigh returns eigenvalues in ascending order; all eigen
    decompositions in this module rely on that order.

    Args:
        S: numpy array (D, D)
        minval (float): smallest eigenvalue of the result

    Returns:
        numpy array (D, D), symmetric
    """
    S = (S + S.T) / 2
    d, Q = np.linalg.eigh(S)
    d = np.maximum(d, minval)
    return np.dot(Q * d, Q.T)


def issemidef(S, minval=0):
    """Whether the smallest eigenvalue of (S + S^T)/2 is at least minval."""
    S = np.asarray(S, dtype=float)
    return np.linalg.eigvalsh((S + S.T) / 2)[0] >= minval


def rank1(S):
    """Best rank-1 positive semi-definite approximation of S.

    Returns d q q^T for the largest eigenvalue d (clipped at 0) of the
    symmetrized S and its eigenvector q.
    """
    d, Q = np.linalg.eigh((S + S.T) / 2)
    q = Q[:, -1]
    return max(d[-1], 0) * np.outer(q, q)


############################
# Likelihood and E step
############################

def _pm_kwargs(pool):
    # run parmap in the pool if there is one, serially otherwise
    return {"pm_pool": pool, "pm_parallel": pool is not None}

# log N(x_i; 0, U_k + V_i) for all i.
# With one V for all samples this needs a single Cholesky factorization.
def _logdens_k(U_k, X, V):
    L = cholesky(U_k + V)
    return ldmvnorm(X, L)

def _logdens(X, U, V, pool=None):
    # (N, K) matrix of log N(x_i; 0, U_k + V_i), one column per component
    columns = parmap.map(_logdens_k, U, X, V, **_pm_kwargs(pool))
    return np.array(columns).reshape(len(U), len(X)).T


def loglik(X, w, U, V, pool=None):
    """Log-likelihood of the data under the Ultimate Deconvolution model.

    Computes sum_i log(sum_k w_k N(x_i; 0, U_k + V_i)). Components with
    zero weight do not contribute.

    Args:
        X: numpy array (N, D) of data
        w: numpy array (K,) of mixture weights
        U: numpy array (K, D, D) of prior covariances
        V: numpy array (D, D) shared residual covariance, or (N, D, D)
        pool: multiprocessing.Pool to distribute the components over

    Returns:
        float

    Throws:
        NumericalError if any U_k + V_i is not positive definite
    """
    w = np.asarray(w, dtype=float)
    U = np.asarray(U, dtype=float)
    nonzero = np.flatnonzero(w > 0)
    log_p = _logdens(X, U[nonzero], V, pool=pool) + np.log(w[nonzero])
    return logsum(log_p, axis=1).sum()


def posterior(X, w, U, V, pool=None):
    """Posterior probabilities of the mixture assignments (E step).

    Args:
        X: numpy array (N, D) of data
        w: numpy array (K,) of mixture weights
        U: numpy array (K, D, D) of prior covariances
        V: numpy array (D, D) shared residual covariance, or (N, D, D)
        pool: multiprocessing.Pool to distribute the components over

    Returns:
        numpy array (N, K), each row sums to 1

    Throws:
        NumericalError if any U_k + V_i is not positive definite
    """
    with np.errstate(divide="ignore"):
        log_w = np.log(np.asarray(w, dtype=float))
    return softmax(_logdens(X, U, V, pool=pool) + log_w, axis=1)


############################
# M step
############################

def update_weights(P, w, update="em"):
    """Update the mixture weights.

    Args:
        P: numpy array (N, K) of posterior assignment probabilities
        w: numpy array (K,) of current mixture weights
        update: "em" for the column means of P, "none" to keep w

    Returns:
        numpy array (K,)
    """
    if update == "none":
        return w
    return safenormalize(P.mean(axis=0))


# posterior moments of the latent signal y_i given x_i and component k:
# b_ik = U_k T_ik^-1 x_i
# B_ik = U_k - U_k T_ik^-1 U_k
# with T_ik = U_k + V_i
def _moments_k(X, U_k, V):
    T = U_k + V
    if V.ndim == 2:
        K = np.linalg.solve(T, U_k).T
        b = np.dot(X, K.T)
        B = U_k - np.dot(K, U_k)
    else:
        TiU = np.linalg.solve(T, np.broadcast_to(U_k, T.shape))
        b = np.einsum('...ji,...j', TiU, X)
        B = U_k - np.einsum('ij,...jk', U_k, TiU)
    return b, B

# C_k = sum_i p_i (b_ik b_ik^T + B_ik) / sum_i p_i, Bovy et al. (2011) eq. 20
def _ed_moment(X, U_k, V, p):
    b, B = _moments_k(X, U_k, V)
    C = np.dot(b.T * p, b)
    if B.ndim == 2:
        C += p.sum() * B
    else:
        C += np.einsum('i,ijk', p, B)
    C /= p.sum()
    return (C + C.T) / 2

# Cholesky factor L of V and the weighted second moment of the data whitened
# by L, W = L^-1 S L^-T with S = sum_i p_i x_i x_i^T / sum_i p_i
def _whitened_moment(X, V, p):
    S = np.dot(X.T * p, X) / p.sum()
    L = cholesky(V)
    Y = scipy.linalg.solve_triangular(L, S, lower=True)
    W = scipy.linalg.solve_triangular(L, Y.T, lower=True)
    return L, (W + W.T) / 2


def update_resid(X, U, V, P, update="em", minval=0):
    """Update the residual covariance V shared by all samples.

    The EM update is the posterior expectation of the noise covariance,
    V = 1/N sum_i sum_k p_ik [(x_i - b_ik)(x_i - b_ik)^T + B_ik],
    with eigenvalues floored at minval.

    Args:
        X: numpy array (N, D) of data
        U: numpy array (K, D, D) of prior covariances
        V: numpy array (D, D) of current residual covariance
        P: numpy array (N, K) of posterior assignment probabilities
        update: "em" or "none"
        minval (float): smallest eigenvalue of the update

    Returns:
        numpy array (D, D)
    """
    if update == "none":
        return V
    N, D = X.shape
    R = np.zeros((D, D))
    for k in range(len(U)):
        p = P[:, k]
        b, B = _moments_k(X, U[k], V)
        e = X - b
        R += np.dot(e.T * p, e) + p.sum() * B
    return psd_floor(R / N, minval)


# EM update for U_k = c U0 with the current U_k as fixed shape U0.
# The latent signal is confined to the column space of U0, where the
# complete-data MLE of the scale is c = trace(U0^+ C_k) / rank(U0).
def _update_scaled_em(U_k, p, X, V, minval):
    d, Q = np.linalg.eigh((U_k + U_k.T) / 2)
    if d[-1] <= 0:
        return U_k
    keep = d > d[-1] * _rank_tol
    Q = Q[:, keep]
    C = _ed_moment(X, U_k, V, p)
    c = (np.diag(np.dot(Q.T, np.dot(C, Q))) / d[keep]).sum() / keep.sum()
    return psd_floor(c * U_k, minval)

# truncated eigenvalue EM for rank-1 matrices: leading rank-1 part of the
# unconstrained MLE in the frame whitened by V
def _update_rank1_teem(U_k, p, X, V, minval):
    if V.ndim == 3:
        return rank1(_ed_moment(X, U_k, V, p))
    L, W = _whitened_moment(X, V, p)
    return np.dot(L, np.dot(rank1(W - np.eye(len(W))), L.T))

def _update_unconstrained_ed(U_k, p, X, V, minval):
    return _ed_moment(X, U_k, V, p)

# truncated eigenvalue EM: the MLE of U_k given V is L (W - I) L^T,
# made positive semi-definite by flooring the eigenvalues of W - I
def _update_unconstrained_teem(U_k, p, X, V, minval):
    if V.ndim == 3:
        return psd_floor(_ed_moment(X, U_k, V, p), minval)
    L, W = _whitened_moment(X, V, p)
    return np.dot(L, np.dot(psd_floor(W - np.eye(len(W)), minval), L.T))

# update rule for each (covariance type, update mode)
_prior_updates = {
    ("scaled", "em"): _update_scaled_em,
    ("scaled", "none"): None,
    ("rank1", "teem"): _update_rank1_teem,
    ("rank1", "none"): None,
    ("unconstrained", "ed"): _update_unconstrained_ed,
    ("unconstrained", "teem"): _update_unconstrained_teem,
    ("unconstrained", "none"): None,
}

def _update_prior_k(U_k, p, update, X, V, minval):
    if update is None:
        return U_k
    if p.sum() < _min_mass:
        logger.debug("component without posterior mass: covariance not updated")
        return U_k
    return update(U_k, p, X, V, minval)


def update_prior(X, U, V, P, covtype, control, pool=None):
    """Update the prior covariance matrices.

    Each matrix is updated with the rule for its covariance type in
    control, using only its own column of P.

    Args:
        X: numpy array (N, D) of data
        U: numpy array (K, D, D) of current prior covariances
        V: numpy array (D, D) shared residual covariance, or (N, D, D)
        P: numpy array (N, K) of posterior assignment probabilities
        covtype: list of K covariance types, see COVTYPES
        control: dictionary of settings, see fit_control_default()
        pool: multiprocessing.Pool to distribute the components over

    Returns:
        numpy array (K, D, D)
    """
    updates = [_prior_updates[t, control[t + "_update"]] for t in covtype]
    Unew = parmap.starmap(_update_prior_k, zip(U, P.T, updates), X, V, control["minval"], **_pm_kwargs(pool))
    return np.array(Unew)


############################
# Progress record
############################

class Progress(object):
    """Append-only record of the EM iterations.

    Every entry holds the iteration number, the log-likelihood after the
    iteration, the largest changes in w, U and V, and the elapsed time of
    the iteration in seconds.

    Attributes:
        iteration (int): number of stored entries
        arrays: dictionary of numpy arrays, one per field
    """
    fields = ("iter", "loglik", "delta_w", "delta_U", "delta_V", "timing")

    def __init__(self, length=0):
        self.iteration = 0
        self.arrays = {}
        for name in self.fields:
            dtype = int if name == "iter" else float
            self.arrays[name] = np.zeros(length, dtype=dtype)
        self._length = length

    def grow(self, length):
        """Make room for at least length more entries."""
        space_needed = length - (self._length - self.iteration)
        if space_needed <= 0:
            return
        for k, array in self.arrays.items():
            self.arrays[k] = np.append(array, np.zeros(space_needed, dtype=array.dtype))
        self._length += space_needed

    def save(self, **values):
        """Append one entry, given as keyword arguments for all fields."""
        if self.iteration == self._length:
            self.grow(1)
        for k in self.fields:
            self.arrays[k][self.iteration] = values[k]
        self.iteration += 1

    def extend(self, other):
        """Append all entries of another Progress."""
        self.grow(len(other))
        for i in range(len(other)):
            self.save(**other[i])

    def get_values(self, name):
        return self.arrays[name][:self.iteration]

    def __getitem__(self, item):
        if isinstance(item, str):
            return self.get_values(item)
        if item < 0:
            item += self.iteration
        if item < 0 or item >= self.iteration:
            raise IndexError("progress entry %d out of range for %d iterations" % (item, self.iteration))
        return {k: self.arrays[k][item] for k in self.fields}

    def __len__(self):
        return self.iteration

    def __repr__(self):
        return "<Progress - %d iterations>" % self.iteration


############################
# Model and fit functions
############################

class UD(object):
    """Ultimate Deconvolution model with K prior components in D dimensions.

    Each sample x_i is drawn from sum_k w_k N(0, U_k + V_i), where V_i is
    either the same matrix V for all samples or one matrix per sample.

    Attributes:
        X: numpy array (N, D), data
        w: numpy array (K,), mixture weights
        U: numpy array (K, D, D), prior covariances
        V: numpy array (D, D) or (N, D, D), residual covariance(s)
        covtype: list of K covariance types, see COVTYPES
        names: list of K component names
        labels: list of D labels of the columns of X and of the rows and
            columns of U and V, or None
        loglik (float): log-likelihood at the current parameters
        progress: Progress of all fit() calls so far
        status: CONVERGED or MAXITER after fit(), None before
    """
    def __init__(self, X, w, U, V, covtype, names=None, labels=None):
        self.X = np.asarray(X, dtype=float)
        self.w = np.asarray(w, dtype=float)
        self.U = np.asarray(U, dtype=float)
        self.V = np.asarray(V, dtype=float)
        self.covtype = list(covtype)
        if names is None:
            names = ["%s_%d" % (t, k+1) for k, t in enumerate(self.covtype)]
        self.names = list(names)
        self.labels = None if labels is None else list(labels)
        self.loglik = None
        self.progress = Progress()
        self.status = None

    @property
    def K(self):
        """int: number of prior components."""
        return self.w.size

    @property
    def D(self):
        """int: dimensions of the feature space."""
        return self.U.shape[-1]

    @property
    def shared_resid(self):
        """bool: whether all samples have the same residual covariance."""
        return self.V.ndim == 2

    def save(self, filename, **kwargs):
        """Save model to file.

        Args:
            filename (str): name for saved file, should end on .npz as the default
                of numpy.savez(), which is called here
            kwargs:  dictionary of additional information to be stored in file.

        Returns:
            None
        """
        progress = {"progress_" + k: self.progress.get_values(k) for k in Progress.fields}
        labels = np.array([] if self.labels is None else self.labels, dtype=str)
        loglik = np.nan if self.loglik is None else self.loglik
        status = "" if self.status is None else self.status
        np.savez(filename, X=self.X, w=self.w, U=self.U, V=self.V,
                 covtype=np.array(self.covtype), names=np.array(self.names),
                 labels=labels, loglik=loglik, status=status, **dict(progress, **kwargs))

    def load(self, filename):
        """Load model from file.

        Additional arguments stored by save() will be ignored.

        Args:
            filename (str): name for file create with save().

        Returns:
            None
        """
        F = np.load(filename)
        self.X = F["X"]
        self.w = F["w"]
        self.U = F["U"]
        self.V = F["V"]
        self.covtype = [str(t) for t in F["covtype"]]
        self.names = [str(n) for n in F["names"]]
        self.labels = [str(l) for l in F["labels"]] or None
        loglik = float(F["loglik"])
        self.loglik = None if np.isnan(loglik) else loglik
        self.status = str(F["status"]) or None
        values = {k: F["progress_" + k] for k in Progress.fields}
        self.progress = Progress(len(values["iter"]))
        for i in range(len(values["iter"])):
            self.progress.save(**{k: values[k][i] for k in Progress.fields})
        F.close()

    @staticmethod
    def from_file(filename):
        """Load model from file.

        Additional arguments stored by save() will be ignored.

        Args:
            filename (str): name for file create with save().

        Returns:
            UD
        """
        model = UD(np.empty((0, 0)), [], np.empty((0, 0, 0)), np.empty((0, 0)), [])
        model.load(filename)
        return model


def _check_data(X):
    X = np.asarray(X)
    if X.ndim != 2 or not np.issubdtype(X.dtype, np.number):
        raise ValidationError("X should be a numeric matrix")
    N, D = X.shape
    if N < 2 or D < 2:
        raise ValidationError("X should have at least 2 columns and at least 2 rows")
    if not np.isfinite(X).all():
        raise ValidationError("X should not contain missing or infinite values")
    return X.astype(float)

def _check_resid(V, N, D, minval):
    mess = "V should either be a positive semi-definite matrix, or a list of positive semi-definite matrices, with one matrix per row of X"
    V = np.asarray(V, dtype=float)
    if V.shape == (D, D):
        if not issemidef(V, minval):
            raise ValidationError(mess)
    elif V.shape == (N, D, D):
        for V_i in V:
            if not issemidef(V_i, minval):
                raise ValidationError(mess)
    else:
        raise ValidationError(mess)
    return V

def _named(matrices, prefix):
    # names and matrices from a dict (names kept) or a sequence (names generated)
    if hasattr(matrices, "keys"):
        return list(matrices.keys()), list(matrices.values())
    matrices = list(matrices)
    return ["%s%d" % (prefix, k+1) for k in range(len(matrices))], matrices

def sim_rank1(D, rng=np.random):
    """Random rank-1 covariance matrix u u^T with u ~ N(0, I)."""
    u = rng.normal(size=D)
    return np.outer(u, u)

def sim_unconstrained(D, rng=np.random):
    """Random full-rank covariance matrix A^T A / D with A_ij ~ N(0, 1)."""
    A = rng.normal(size=(D, D))
    return np.dot(A.T, A) / D


def init(X, V=None, n_rank1=None, n_unconstrained=None, U_scaled=None, U_rank1=None, U_unconstrained=None, labels=None, control=None, rng=np.random):
    """Initialize an Ultimate Deconvolution model.

    Scaled matrices default to the identity ("indep") and the matrix of
    ones ("equal"). Without U_rank1 or U_unconstrained, n_rank1 (default 4)
    rank-1 and n_unconstrained (default 4) unconstrained matrices are
    drawn at random. Mixture weights start uniform.

    Args:
        X: numpy array (N, D) of data, N >= 2 and D >= 2
        V: numpy array (D, D) initial residual covariance (default: identity),
            or (N, D, D) with one fixed covariance per sample
        n_rank1 (int): number of random rank-1 matrices
        n_unconstrained (int): number of random unconstrained matrices
        U_scaled: dict or list of (D, D) scaled matrices
        U_rank1: dict or list of (D, D) matrices, projected to rank 1
        U_unconstrained: dict or list of (D, D) unconstrained matrices
        labels: list of D column labels of X
        control: dictionary of settings, see fit_control_default()
        rng: numpy.random.RandomState for deterministic behavior

    Returns:
        UD

    Throws:
        ValidationError for malformed or inconsistent arguments
        NumericalError if the initial log-likelihood cannot be computed
    """
    X = _check_data(X)
    N, D = X.shape
    control = _merge_control(control)
    minval = control["minval"]

    if n_rank1 is not None and U_rank1 is not None:
        raise ValidationError("At most one of n_rank1 and U_rank1 should be provided")
    if n_unconstrained is not None and U_unconstrained is not None:
        raise ValidationError("At most one of n_unconstrained and U_unconstrained should be provided")
    if U_scaled is None:
        U_scaled = {"indep": np.eye(D), "equal": np.ones((D, D))}
    if U_rank1 is None:
        if n_rank1 is None:
            n_rank1 = 4
        U_rank1 = [sim_rank1(D, rng=rng) for k in range(n_rank1)]
    if U_unconstrained is None:
        if n_unconstrained is None:
            n_unconstrained = 4
        U_unconstrained = [sim_unconstrained(D, rng=rng) for k in range(n_unconstrained)]

    names, U, covtype = [], [], []
    for t, matrices, prefix in (("scaled", U_scaled, "scaled_"),
                                ("rank1", U_rank1, "rank1_"),
                                ("unconstrained", U_unconstrained, "unconstrained")):
        names_, matrices = _named(matrices, prefix)
        for name, U_k in zip(names_, matrices):
            U_k = np.asarray(U_k, dtype=float)
            if U_k.shape != (D, D):
                raise ValidationError("All U_%s matrices should be %d x %d" % (t, D, D))
            if t == "rank1":
                U_k = rank1(U_k)
            elif not issemidef(U_k, minval):
                raise ValidationError("All U_%s matrices should be positive semi-definite" % t)
            names.append(name)
            U.append(U_k)
            covtype.append(t)
    if len(U) < 2:
        raise ValidationError("The total number of prior covariances should be at least 2")

    if V is None:
        V = np.eye(D)
    V = _check_resid(V, N, D, minval)
    if labels is not None and len(labels) != D:
        raise ValidationError("labels should have one entry per column of X")

    K = len(U)
    model = UD(X, np.ones(K)/K, np.array(U), V, covtype, names=names, labels=labels)
    model.loglik = loglik(X, model.w, model.U, V)
    return model


def _log_progress(record):
    logger.info("%4d %+0.16e %0.2e %0.2e %0.2e" % (record["iter"], record["loglik"], record["delta_w"], record["delta_U"], record["delta_V"]))


# run EM sequence
def _main_loop(X, w, U, V, covtype, control, pool=None, callback=None, start=0):
    maxiter = control["maxiter"]
    progress = Progress(maxiter)
    status = MAXITER
    shared = V.ndim == 2

    for it in range(maxiter):
        t0 = time.perf_counter()

        # E step: posterior assignment probabilities under current parameters
        P = posterior(X, w, U, V, pool=pool)

        # M step: all updates from the same P and the current parameters
        if shared:
            Vnew = update_resid(X, U, V, P, update=control["resid_update"], minval=control["minval"])
        else:
            Vnew = V
        Unew = update_prior(X, U, V, P, covtype, control, pool=pool)
        wnew = update_weights(P, w, update=control["weights_update"])

        log_L = loglik(X, wnew, Unew, Vnew, pool=pool)
        dw = np.abs(wnew - w).max()
        dU = np.abs(Unew - U).max()
        if shared:
            dV = np.abs(Vnew - V).max()
        else:
            dV = 0.
        record = {"iter": start + it + 1, "loglik": log_L, "delta_w": dw,
                  "delta_U": dU, "delta_V": dV, "timing": time.perf_counter() - t0}
        progress.save(**record)
        if callback is not None:
            callback(record)

        w, U, V = wnew, Unew, Vnew
        if max(dw, dU, dV) < control["tol"]:
            logger.info("parameters converged within tolerance %r: stopping here." % control["tol"])
            status = CONVERGED
            break

    return w, U, V, progress, status


def fit(model, X=None, control=None, callback=None):
    """Fit an Ultimate Deconvolution model by expectation-maximization.

    Runs up to control["maxiter"] EM iterations starting from the current
    parameters of model, and stores the results in model: w, U, V, loglik,
    status, and the new entries of model.progress. The covariance types and
    names of the components are kept. If an error is raised, model is left
    unchanged.

    Iteration numbers in model.progress continue across calls: a second
    call on a model with 20 recorded iterations starts at iteration 21,
    it does not restart at 1.

    With one residual covariance per data point, V cannot be updated and
    truncated eigenvalue EM of unconstrained covariances reduces to ED, so
    resid_update="em" falls back to "none" and unconstrained_update="teem"
    to "ed", each with a UserWarning.

    Args:
        model: UD, typically from init() or a previous call to fit()
        X: numpy array (N, D) of data, defaults to model.X
        control: dictionary of settings overriding fit_control_default()
        callback: function called after every iteration with a dictionary
            with keys Progress.fields. Defaults to logging at INFO level.

    Returns:
        model

    Throws:
        ValidationError if X is inconsistent with model
        ConfigurationError for unknown or unsupported settings
        NumericalError if a covariance matrix is not positive definite
    """
    if X is None:
        X = model.X
    X = _check_data(X)
    N, D = X.shape
    if D != model.D:
        raise ValidationError("X should have %d columns" % model.D)
    if not model.shared_resid and len(model.V) != N:
        raise ValidationError("X should have one row per residual covariance in V")
    if not (model.K == len(model.U) == len(model.covtype)) or model.K < 2:
        raise ValidationError("model should have the same number (at least 2) of weights, prior covariances and covariance types")
    if not set(model.covtype) <= set(COVTYPES):
        raise ValidationError("covariance types should be in %r" % (COVTYPES,))

    control = _merge_control(control)
    if not model.shared_resid and control["resid_update"] != "none":
        warnings.warn("Residual covariance V can only be updated when it is the same for all data points; switching to resid_update='none'")
        control["resid_update"] = "none"
    if not model.shared_resid and control["unconstrained_update"] == "teem":
        warnings.warn("Truncated eigenvalue EM of unconstrained covariances coincides with ED when V differs between data points; switching to unconstrained_update='ed'")
        control["unconstrained_update"] = "ed"

    # give an overview of the model fitting
    logger.info("Performing Ultimate Deconvolution on %d x %d matrix" % (N, D))
    if model.shared_resid:
        logger.info("data points are i.i.d. (same V)")
    else:
        logger.info("data points are not i.i.d. (different Vs)")
    logger.info("prior covariances: %d scaled, %d rank-1, %d unconstrained" % tuple(model.covtype.count(t) for t in COVTYPES))
    logger.info("prior covariance updates: %s (scaled), %s (rank-1), %s (unconstrained)" % (control["scaled_update"], control["rank1_update"], control["unconstrained_update"]))
    logger.info("mixture weights update: %s" % control["weights_update"])
    if model.shared_resid:
        logger.info("residual covariance update: %s" % control["resid_update"])
    logger.info("max %d updates, conv tol %0.1e" % (control["maxiter"], control["tol"]))
    logger.info("iter          log-likelihood |w - w'| |U - U'| |V - V'|")

    if callback is None:
        callback = _log_progress

    # set up pool
    pool = None
    if control["processes"] != 1:
        pool = multiprocessing.Pool(control["processes"])
    try:
        w, U, V, progress, status = _main_loop(X, model.w, model.U, model.V, model.covtype, control, pool=pool, callback=callback, start=len(model.progress))
        log_L = loglik(X, w, U, V, pool=pool)
    finally:
        if pool is not None:
            pool.close()
            pool.join()

    model.X = X
    model.w = w
    model.U = U
    model.V = V
    model.loglik = log_L
    model.status = status
    model.progress.extend(progress)
    return model


def simulate(n, w, U, V, rng=np.random):
    """Draw samples from an Ultimate Deconvolution model.

    Args:
        n (int): number of samples to draw
        w: numpy array (K,) of mixture weights
        U: numpy array (K, D, D), or dict or list of K (D, D) prior covariances
        V: numpy array (D, D) shared residual covariance, or (n, D, D)
        rng: numpy.random.RandomState for deterministic draw

    Returns:
        numpy array (n, D)
    """
    if hasattr(U, "keys"):
        U = list(U.values())
    w = np.asarray(w, dtype=float)
    U = np.asarray(U, dtype=float)
    V = np.asarray(V, dtype=float)
    K, D = len(w), U.shape[-1]

    # draw component indices given the weights, need to make sure: sum=1
    ind = rng.choice(K, size=n, p=w/w.sum())
    X = np.empty((n, D))
    for k in np.flatnonzero(np.bincount(ind, minlength=K)):
        sel = ind == k
        X[sel] = rng.multivariate_normal(np.zeros(D), U[k], size=sel.sum())

    # add noise
    if V.ndim == 2:
        X += rng.multivariate_normal(np.zeros(D), V, size=n)
    else:
        # create noise from unit covariance and then dot with eigenvalue
        # decomposition of V to get the right noise distribution:
        # n' = R V^1/2 n, where V = R diag(val) R^T
        noise = rng.normal(size=(n, D))
        val, rot = np.linalg.eigh(V)
        val = np.maximum(val, 0)
        X += np.einsum('...ij,...j', rot, np.sqrt(val)*noise)
    return X
