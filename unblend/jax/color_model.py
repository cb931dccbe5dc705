# Copyright 2024 The unblend Authors.
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""Statistical color models describing the expected colors of a layer."""

import abc

import jax.numpy as jnp
import numpy as np


class ColorModel(abc.ABC):
  """A color distribution that scores how well a color fits a layer."""

  @abc.abstractmethod
  def distance(self, color: jnp.ndarray) -> jnp.ndarray:
    """Returns the distance of [..., 3] colors from the model as [...]."""

  @abc.abstractmethod
  def distance_gradient(self, color: jnp.ndarray) -> jnp.ndarray:
    """Returns the [..., 3] gradient of `distance` at `color`."""

  @abc.abstractmethod
  def representative_color(self) -> np.ndarray:
    """Returns the most typical color of the model as a (3,) array."""


class GaussianColorModel(ColorModel):
  """Multivariate normal color model scored by squared Mahalanobis distance.

  Immutable once created. The inverse covariance must be a symmetric,
  invertible 3x3 matrix.
  """

  def __init__(self, mean, inverse_covariance):
    mean = np.array(mean, dtype=np.float64)
    inverse_covariance = np.array(inverse_covariance, dtype=np.float64)
    if mean.shape != (3,):
      raise ValueError(f'mean must have shape (3,), but found {mean.shape}')
    if inverse_covariance.shape != (3, 3):
      raise ValueError(
          f'inverse_covariance must have shape (3, 3), but found '
          f'{inverse_covariance.shape}')
    if not np.allclose(inverse_covariance, inverse_covariance.T):
      raise ValueError('inverse_covariance must be symmetric.')
    if np.linalg.matrix_rank(inverse_covariance) < 3:
      raise ValueError('inverse_covariance must be invertible.')
    mean.setflags(write=False)
    inverse_covariance.setflags(write=False)
    self._mean = mean
    self._inverse_covariance = inverse_covariance

  @classmethod
  def from_covariance(cls, mean, covariance) -> 'GaussianColorModel':
    covariance = np.array(covariance, dtype=np.float64)
    if covariance.shape != (3, 3) or np.linalg.matrix_rank(covariance) < 3:
      raise ValueError(
          f'covariance must be an invertible 3x3 matrix, got {covariance}')
    return cls(mean, np.linalg.inv(covariance))

  @classmethod
  def from_variance(cls, mean, variance: float) -> 'GaussianColorModel':
    """Creates an isotropic model with the given per-channel variance."""
    if variance <= 0:
      raise ValueError(f'variance must be positive, but found {variance}')
    return cls(mean, np.eye(3) / variance)

  @property
  def mean(self) -> np.ndarray:
    return self._mean

  @property
  def inverse_covariance(self) -> np.ndarray:
    return self._inverse_covariance

  @property
  def covariance(self) -> np.ndarray:
    return np.linalg.inv(self._inverse_covariance)

  def distance(self, color):
    offset = jnp.asarray(color) - self._mean
    return jnp.einsum('...i,ij,...j->...', offset, self._inverse_covariance,
                      offset)

  def distance_gradient(self, color):
    offset = jnp.asarray(color) - self._mean
    return 2.0 * jnp.einsum('ij,...j->...i', self._inverse_covariance, offset)

  def representative_color(self):
    return self._mean

  def __repr__(self):
    return (f'GaussianColorModel(mean={self._mean.tolist()}, '
            f'inverse_covariance={self._inverse_covariance.tolist()})')
