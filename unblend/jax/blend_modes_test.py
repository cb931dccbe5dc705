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
from unblend.jax import blend_modes
from unblend.jax.constants import BlendMode

import numpy as np

_ALL_MODES = [(mode,) for mode in BlendMode]
_BOUNDED_MODES = [(mode,) for mode in BlendMode
                  if mode != BlendMode.LINEAR_DODGE]


def _grid(num_samples=21):
  s, d = np.meshgrid(
      np.linspace(0.0, 1.0, num_samples), np.linspace(0.0, 1.0, num_samples))
  return s.ravel(), d.ravel()


class BlendModesTest(chex.TestCase, parameterized.TestCase):

  @parameterized.parameters(*_BOUNDED_MODES)
  def test_values_stay_in_unit_range(self, mode):
    s, d = _grid()
    value = np.asarray(blend_modes.blend(s, d, mode))
    self.assertFalse(np.any(np.isnan(value)))
    self.assertGreaterEqual(np.min(value), 0.0)
    self.assertLessEqual(np.max(value), 1.0)

  def test_linear_dodge_saturates_only_when_cropped(self):
    self.assertAlmostEqual(
        float(blend_modes.blend(0.75, 0.5, BlendMode.LINEAR_DODGE)), 1.25)
    self.assertAlmostEqual(
        float(blend_modes.blend(0.75, 0.5, BlendMode.LINEAR_DODGE, crop=True)),
        1.0)
    self.assertAlmostEqual(
        float(
            blend_modes.blend_grad_s(
                0.75, 0.5, BlendMode.LINEAR_DODGE, crop=True)), 0.0)

  # pyformat: disable
  @parameterized.parameters(
      (BlendMode.NORMAL, 0.3, 0.8, 0.3),
      (BlendMode.MULTIPLY, 0.5, 0.5, 0.25),
      (BlendMode.SCREEN, 0.5, 0.5, 0.75),
      (BlendMode.OVERLAY, 0.2, 0.4, 0.16),
      (BlendMode.OVERLAY, 0.5, 0.75, 0.75),
      (BlendMode.DARKEN, 0.3, 0.6, 0.3),
      (BlendMode.LIGHTEN, 0.3, 0.6, 0.6),
      (BlendMode.COLOR_DODGE, 0.5, 0.25, 0.5),
      (BlendMode.COLOR_DODGE, 0.5, 0.0, 0.0),
      (BlendMode.COLOR_DODGE, 1.0, 0.5, 1.0),
      (BlendMode.COLOR_BURN, 0.5, 0.75, 0.5),
      (BlendMode.COLOR_BURN, 0.0, 0.5, 0.0),
      (BlendMode.COLOR_BURN, 0.5, 1.0, 1.0),
      (BlendMode.HARD_LIGHT, 0.8, 0.5, 0.8),
      (BlendMode.SOFT_LIGHT, 0.5, 0.3, 0.3),
      (BlendMode.SOFT_LIGHT, 1.0, 0.64, 0.8),
      (BlendMode.SOFT_LIGHT, 1.0, 0.25, 0.5),
      (BlendMode.DIFFERENCE, 0.2, 0.7, 0.5),
      (BlendMode.EXCLUSION, 0.5, 0.5, 0.5),
      (BlendMode.LINEAR_DODGE, 0.25, 0.5, 0.75),
  )
  # pyformat: enable
  def test_known_values(self, mode, s, d, expected):
    self.assertAlmostEqual(float(blend_modes.blend(s, d, mode)), expected)

  @parameterized.parameters(*_ALL_MODES)
  def test_partials_match_finite_differences(self, mode):
    rng = np.random.default_rng(7)
    s = rng.uniform(0.02, 0.98, size=200)
    d = rng.uniform(0.02, 0.98, size=200)
    step = 1e-6

    def central_difference(ds, dd):
      return (np.asarray(blend_modes.blend(s + ds, d + dd, mode)) - np.asarray(
          blend_modes.blend(s - ds, d - dd, mode))) / (2.0 * step)

    np.testing.assert_allclose(
        blend_modes.blend_grad_s(s, d, mode),
        central_difference(step, 0.0),
        atol=1e-5)
    np.testing.assert_allclose(
        blend_modes.blend_grad_d(s, d, mode),
        central_difference(0.0, step),
        atol=1e-5)

  @parameterized.parameters(*_ALL_MODES)
  def test_partials_match_autodiff(self, mode):
    rng = np.random.default_rng(3)
    s = rng.uniform(0.0, 1.0, size=50)
    d = rng.uniform(0.0, 1.0, size=50)
    blend_fn = lambda s, d: blend_modes.blend(s, d, mode)
    grad_s = jax.vmap(jax.grad(blend_fn, argnums=0))(s, d)
    grad_d = jax.vmap(jax.grad(blend_fn, argnums=1))(s, d)
    np.testing.assert_allclose(
        blend_modes.blend_grad_s(s, d, mode), grad_s, atol=1e-12)
    np.testing.assert_allclose(
        blend_modes.blend_grad_d(s, d, mode), grad_d, atol=1e-12)

  @parameterized.parameters(*_ALL_MODES)
  def test_autodiff_is_finite_on_the_boundary(self, mode):
    s, d = _grid(5)
    blend_fn = lambda s, d: blend_modes.blend(s, d, mode)
    for argnums in (0, 1):
      grads = np.asarray(jax.vmap(jax.grad(blend_fn, argnums=argnums))(s, d))
      self.assertTrue(np.all(np.isfinite(grads)))
    self.assertTrue(
        np.all(np.isfinite(np.asarray(blend_modes.blend_grad_s(s, d, mode)))))
    self.assertTrue(
        np.all(np.isfinite(np.asarray(blend_modes.blend_grad_d(s, d, mode)))))

  def test_blends_broadcast_over_images(self):
    source = np.full((4, 5, 3), 0.5)
    destination = np.linspace(0.0, 1.0, 3)
    value = blend_modes.blend(source, destination, BlendMode.MULTIPLY)
    self.assertEqual(value.shape, (4, 5, 3))
    np.testing.assert_allclose(value[2, 3], [0.0, 0.25, 0.5])

  @parameterized.parameters(*_ALL_MODES)
  def test_mode_names_round_trip(self, mode):
    self.assertEqual(BlendMode(mode.value), mode)

  def test_unknown_mode_raises(self):
    with self.assertRaisesRegex(ValueError, 'Unsupported blend mode'):
      blend_modes.blend(0.5, 0.5, 'Normal')


if __name__ == '__main__':
  absltest.main()
