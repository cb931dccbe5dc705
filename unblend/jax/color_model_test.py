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

from absl.testing import absltest
from absl.testing import parameterized
import chex
import jax
from unblend.jax import color_model

import numpy as np

_MEAN = np.array([0.2, 0.5, 0.7])
_COVARIANCE = np.array([[0.04, 0.01, 0.0],
                        [0.01, 0.03, 0.005],
                        [0.0, 0.005, 0.02]])


class GaussianColorModelTest(chex.TestCase, parameterized.TestCase):

  def test_distance_is_zero_at_the_mean(self):
    model = color_model.GaussianColorModel.from_covariance(_MEAN, _COVARIANCE)
    self.assertAlmostEqual(float(model.distance(_MEAN)), 0.0)
    np.testing.assert_allclose(model.distance_gradient(_MEAN), np.zeros(3))
    np.testing.assert_array_equal(model.representative_color(), _MEAN)

  def test_isotropic_distance(self):
    model = color_model.GaussianColorModel.from_variance(_MEAN, 0.25)
    color = _MEAN + np.array([0.5, 0.0, 0.0])
    self.assertAlmostEqual(float(model.distance(color)), 1.0)

  def test_distance_gradient_matches_autodiff(self):
    model = color_model.GaussianColorModel.from_covariance(_MEAN, _COVARIANCE)
    color = np.array([0.9, 0.1, 0.4])
    np.testing.assert_allclose(
        model.distance_gradient(color), jax.grad(model.distance)(color))

  def test_distance_applies_per_pixel(self):
    model = color_model.GaussianColorModel.from_covariance(_MEAN, _COVARIANCE)
    colors = np.random.default_rng(0).uniform(size=(4, 5, 3))
    distances = model.distance(colors)
    self.assertEqual(distances.shape, (4, 5))
    self.assertAlmostEqual(
        float(distances[2, 3]), float(model.distance(colors[2, 3])))
    self.assertEqual(model.distance_gradient(colors).shape, (4, 5, 3))

  @parameterized.parameters(0.5, 2.0, 10.0)
  def test_distance_grows_with_inverse_covariance_scale(self, scale):
    model = color_model.GaussianColorModel.from_covariance(_MEAN, _COVARIANCE)
    scaled = color_model.GaussianColorModel(_MEAN,
                                            scale * model.inverse_covariance)
    color = np.array([0.3, 0.3, 0.3])
    self.assertAlmostEqual(
        float(scaled.distance(color)), scale * float(model.distance(color)))

  def test_covariance_round_trips(self):
    model = color_model.GaussianColorModel.from_covariance(_MEAN, _COVARIANCE)
    np.testing.assert_allclose(model.covariance, _COVARIANCE)

  def test_model_is_immutable(self):
    model = color_model.GaussianColorModel.from_variance(_MEAN, 0.1)
    with self.assertRaises(ValueError):
      model.mean[0] = 1.0
    with self.assertRaises(ValueError):
      model.inverse_covariance[0, 0] = 1.0

  # pyformat: disable
  @parameterized.named_parameters(
      ('bad_mean_shape', [0.1, 0.2], np.eye(3), 'mean must have shape'),
      ('bad_matrix_shape', _MEAN, np.eye(2), 'must have shape'),
      ('asymmetric', _MEAN, [[1.0, 0.5, 0.0], [0.0, 1.0, 0.0],
                             [0.0, 0.0, 1.0]], 'symmetric'),
      ('singular', _MEAN, np.diag([1.0, 1.0, 0.0]), 'invertible'),
  )
  # pyformat: enable
  def test_invalid_model_raises(self, mean, inverse_covariance, message):
    with self.assertRaisesRegex(ValueError, message):
      color_model.GaussianColorModel(mean, inverse_covariance)

  def test_invalid_variance_raises(self):
    with self.assertRaisesRegex(ValueError, 'positive'):
      color_model.GaussianColorModel.from_variance(_MEAN, 0.0)
    with self.assertRaisesRegex(ValueError, 'invertible'):
      color_model.GaussianColorModel.from_covariance(_MEAN, np.zeros((3, 3)))


if __name__ == '__main__':
  absltest.main()
