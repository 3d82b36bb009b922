import logging

import numpy as np
import pytest
from numpy.random import RandomState

import pyudr
from conftest import U_TRUE, V_TRUE, W_TRUE


############################
# init
############################

def test_init_defaults(data500):
    model = pyudr.init(data500, rng=RandomState(1))
    assert model.K == 10
    assert model.D == 2
    assert model.names[:2] == ["indep", "equal"]
    assert model.names[2:6] == ["rank1_%d" % k for k in range(1, 5)]
    assert model.names[6:] == ["unconstrained%d" % k for k in range(1, 5)]
    assert model.covtype == ["scaled"]*2 + ["rank1"]*4 + ["unconstrained"]*4
    assert np.allclose(model.w, 0.1)
    assert np.array_equal(model.V, np.eye(2))
    assert model.shared_resid
    assert np.isclose(model.loglik, pyudr.loglik(data500, model.w, model.U, model.V))
    assert len(model.progress) == 0
    assert model.status is None
    for k in range(2, 6):
        assert np.allclose(np.linalg.eigvalsh(model.U[k])[0], 0)


def test_init_projects_rank1_matrices(data500):
    model = pyudr.init(data500, U_rank1=[np.eye(2) + np.ones((2, 2))], n_unconstrained=0)
    assert model.covtype == ["scaled", "scaled", "rank1"]
    assert np.allclose(model.U[2], 1.5*np.ones((2, 2)))


def test_init_labels(data500):
    model = pyudr.init(data500, n_rank1=0, labels=["d1", "d2"])
    assert model.labels == ["d1", "d2"]
    with pytest.raises(pyudr.ValidationError):
        pyudr.init(data500, labels=["d1"])


@pytest.mark.parametrize("X", [np.zeros(5), np.zeros((1, 2)), np.zeros((5, 1)),
                               np.array([["a", "b"], ["c", "d"]]),
                               np.array([[1., np.nan], [0., 1.]])])
def test_init_rejects_bad_data(X):
    with pytest.raises(pyudr.ValidationError):
        pyudr.init(X)


def test_init_rejects_bad_covariances(data500):
    with pytest.raises(pyudr.ValidationError):
        pyudr.init(data500, n_rank1=1, U_rank1=[np.eye(2)])
    with pytest.raises(pyudr.ValidationError):
        pyudr.init(data500, n_unconstrained=1, U_unconstrained=[np.eye(2)])
    with pytest.raises(pyudr.ValidationError):
        pyudr.init(data500, U_scaled=[np.array([[1., 2.], [2., 1.]])])
    with pytest.raises(pyudr.ValidationError):
        pyudr.init(data500, U_unconstrained=[np.eye(3)])
    with pytest.raises(pyudr.ValidationError):
        pyudr.init(data500, U_scaled=[np.eye(2)], n_rank1=0, n_unconstrained=0)


def test_init_rejects_bad_resid(data500):
    with pytest.raises(pyudr.ValidationError):
        pyudr.init(data500, V=-np.eye(2))
    with pytest.raises(pyudr.ValidationError):
        pyudr.init(data500, V=np.array([np.eye(2)]*10))
    with pytest.raises(pyudr.ValidationError):
        pyudr.init(data500, V=np.eye(3))


############################
# control
############################

@pytest.mark.parametrize("control", [{"foo": 1}, {"rank1_update": "ed"},
                                     {"scaled_update": "teem"}, {"weights_update": "mle"},
                                     {"tol": 0}, {"maxiter": -1}, {"maxiter": 2.5},
                                     {"processes": 0}, {"maxiter": "a"}, {"tol": None},
                                     {"tol": float("nan")}, {"minval": "x"}, {"minval": None},
                                     {"processes": 1.5}])
def test_unsupported_control(data500, control):
    model = pyudr.init(data500, rng=RandomState(1))
    with pytest.raises(pyudr.ConfigurationError):
        pyudr.fit(model, control=control)
    assert len(model.progress) == 0


def test_control_defaults_are_fresh():
    control = pyudr.fit_control_default()
    control["maxiter"] = 1
    assert pyudr.fit_control_default()["maxiter"] == 20


def test_resid_update_downgraded_for_sample_covariances(hetero):
    X, V = hetero
    model = pyudr.init(X, V=V, rng=RandomState(4))
    assert not model.shared_resid
    with pytest.warns(UserWarning):
        pyudr.fit(model, control={"maxiter": 5})
    assert np.array_equal(model.V, V)
    assert np.all(model.progress["delta_V"] == 0)
    assert np.isfinite(model.loglik)


def test_unconstrained_teem_downgraded_for_sample_covariances(hetero):
    X, V = hetero
    models = [pyudr.init(X, V=V, rng=RandomState(4)) for i in range(2)]
    pyudr.fit(models[0], control={"maxiter": 5, "resid_update": "none"})
    with pytest.warns(UserWarning, match="unconstrained_update='ed'"):
        pyudr.fit(models[1], control={"maxiter": 5, "resid_update": "none", "unconstrained_update": "teem"})
    assert np.allclose(models[0].U, models[1].U)
    assert np.isclose(models[0].loglik, models[1].loglik)


def test_rank1_teem_with_sample_covariances(hetero):
    X, V = hetero
    model = pyudr.init(X, V=V, rng=RandomState(4))
    pyudr.fit(model, control={"maxiter": 5, "resid_update": "none", "rank1_update": "teem"})
    assert np.all(np.isfinite(model.progress["loglik"]))
    for U_k, t in zip(model.U, model.covtype):
        d = np.linalg.eigvalsh(U_k)
        assert d[0] >= -1e-6
        if t == "rank1":
            assert np.allclose(d[:-1], 0, atol=1e-8 * max(d[-1], 1))


############################
# fit
############################

def test_progress_is_concatenated(data500):
    model = pyudr.init(data500, rng=RandomState(1))
    control = {"maxiter": 3, "tol": 1e-12}
    pyudr.fit(model, control=control)
    first = model.progress["loglik"].copy()
    pyudr.fit(model, control=control)
    assert len(model.progress) == 6
    assert np.array_equal(model.progress["iter"], np.arange(1, 7))
    assert np.array_equal(model.progress["loglik"][:3], first)
    assert model.status == pyudr.MAXITER
    assert model.progress[-1]["iter"] == 6
    with pytest.raises(IndexError):
        model.progress[6]


def test_callback_receives_every_iteration(data500):
    model = pyudr.init(data500, rng=RandomState(1))
    records = []
    pyudr.fit(model, control={"maxiter": 4, "tol": 1e-12}, callback=records.append)
    assert len(records) == 4
    assert set(records[0].keys()) == set(pyudr.Progress.fields)
    assert [r["loglik"] for r in records] == list(model.progress["loglik"])


def test_progress_is_logged(data500, caplog):
    model = pyudr.init(data500, rng=RandomState(1))
    with caplog.at_level(logging.INFO, logger="pyudr"):
        pyudr.fit(model, control={"maxiter": 2})
    assert "log-likelihood" in caplog.text
    assert "Performing Ultimate Deconvolution on 500 x 2 matrix" in caplog.text


def test_fit_keeps_covariance_types_and_names(data500):
    model = pyudr.init(data500, rng=RandomState(1), labels=["a", "b"])
    names, covtype = list(model.names), list(model.covtype)
    pyudr.fit(model, control={"maxiter": 2})
    assert model.names == names
    assert model.covtype == covtype
    assert model.labels == ["a", "b"]
    assert model.U.shape == (10, 2, 2)


def test_fit_rejects_inconsistent_data(data500):
    model = pyudr.init(data500, rng=RandomState(1))
    with pytest.raises(pyudr.ValidationError):
        pyudr.fit(model, X=np.zeros((10, 3)))


def test_fit_with_new_data_keeps_labels(data500, data4000):
    model = pyudr.init(data500, rng=RandomState(1), labels=["a", "b"])
    pyudr.fit(model, X=data4000, control={"maxiter": 2})
    assert model.labels == ["a", "b"]
    assert model.X.shape == (4000, 2)
    assert len(model.labels) == model.D


def test_numerical_error_leaves_model_unchanged():
    X = np.array([[1., 2.], [-1., 0.5], [0., 1.]])
    U = np.zeros((2, 2, 2))
    model = pyudr.UD(X, [0.5, 0.5], U, np.zeros((2, 2)), ["scaled", "unconstrained"])
    with pytest.raises(pyudr.NumericalError):
        pyudr.fit(model)
    assert np.array_equal(model.w, [0.5, 0.5])
    assert np.array_equal(model.U, U)
    assert model.loglik is None
    assert len(model.progress) == 0


def test_pool_matches_serial(data500):
    models = [pyudr.init(data500, rng=RandomState(1)) for i in range(2)]
    pyudr.fit(models[0], control={"maxiter": 3, "processes": 1})
    pyudr.fit(models[1], control={"maxiter": 3, "processes": 2})
    assert np.allclose(models[0].w, models[1].w)
    assert np.allclose(models[0].U, models[1].U)
    assert np.allclose(models[0].V, models[1].V)
    assert np.isclose(models[0].loglik, models[1].loglik)


def test_save_and_load(data500, tmp_path):
    model = pyudr.init(data500, rng=RandomState(1), labels=["d1", "d2"])
    pyudr.fit(model, control={"maxiter": 3})
    filename = str(tmp_path / "ud.npz")
    model.save(filename)
    loaded = pyudr.UD.from_file(filename)
    assert np.array_equal(loaded.X, model.X)
    assert np.array_equal(loaded.w, model.w)
    assert np.array_equal(loaded.U, model.U)
    assert np.array_equal(loaded.V, model.V)
    assert loaded.covtype == model.covtype
    assert loaded.names == model.names
    assert loaded.labels == model.labels
    assert loaded.loglik == model.loglik
    assert loaded.status == model.status
    assert len(loaded.progress) == 3
    for k in pyudr.Progress.fields:
        assert np.array_equal(loaded.progress[k], model.progress[k])
    # a loaded model can be fit further
    pyudr.fit(loaded, control={"maxiter": 1})
    assert loaded.progress["iter"][-1] == 4


def test_simulate(rng):
    X = pyudr.simulate(20000, W_TRUE, U_TRUE, V_TRUE, rng=rng)
    assert X.shape == (20000, 2)
    # the marginal covariance is sum_k w_k U_k + V
    expected = sum(w * U for w, U in zip(W_TRUE, U_TRUE.values())) + V_TRUE
    assert np.allclose(np.cov(X.T), expected, atol=0.1)


def test_simulate_with_sample_covariances(rng):
    V = np.array([np.diag([0.5, 2.])]*20000)
    X = pyudr.simulate(20000, [0.5, 0.5], np.zeros((2, 2, 2)), V, rng=rng)
    assert np.allclose(np.var(X, axis=0), [0.5, 2.], atol=0.1)
