import numpy as np
import pytest
from numpy.random import RandomState

import pyudr


# four-component model with correlated residuals
V_TRUE = np.array([[0.8, 0.2],
                   [0.2, 1.5]])
U_TRUE = {"none": np.array([[0., 0.], [0., 0.]]),
          "shared": np.array([[1.0, 0.9], [0.9, 1.0]]),
          "only1": np.array([[1., 0.], [0., 0.]]),
          "only2": np.array([[0., 0.], [0., 1.]])}
W_TRUE = np.array([0.8, 0.1, 0.075, 0.025])


@pytest.fixture
def rng():
    return RandomState(13)


@pytest.fixture(scope="module")
def data4000():
    return pyudr.simulate(4000, W_TRUE, U_TRUE, V_TRUE, rng=RandomState(1))


@pytest.fixture(scope="module")
def data500():
    return pyudr.simulate(500, W_TRUE, U_TRUE, V_TRUE, rng=RandomState(2))


@pytest.fixture
def hetero():
    # data with a different residual covariance for every sample
    rng = RandomState(7)
    N = 300
    scales = rng.uniform(0.5, 1.5, size=(N, 2))
    V = np.zeros((N, 2, 2))
    V[:, 0, 0] = scales[:, 0]
    V[:, 1, 1] = scales[:, 1]
    V[:, 0, 1] = V[:, 1, 0] = 0.1
    X = pyudr.simulate(N, W_TRUE, U_TRUE, V, rng=rng)
    return X, V
