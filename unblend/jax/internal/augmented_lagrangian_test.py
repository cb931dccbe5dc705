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
from unblend.common import test_utils
from unblend.jax import color_model
from unblend.jax import composite
from unblend.jax import layers
from unblend.jax.constants import BlendMode
from unblend.jax.internal import augmented_lagrangian
from unblend.jax.internal import energy

import numpy as np


def _white_and_black_registry():
  return layers.LayerRegistry([
      layers.LayerDescriptor(
          composite.OVER, BlendMode.NORMAL,
          color_model.GaussianColorModel.from_variance([1.0, 1.0, 1.0], 0.01)),
      layers.LayerDescriptor(
          composite.OVER, BlendMode.NORMAL,
          color_model.GaussianColorModel.from_variance([0.0, 0.0, 0.0], 0.01)),
  ])


class AugmentedLagrangianTest(chex.TestCase, parameterized.TestCase):

  @parameterized.parameters((0.5, 0.5), (0.3, 0.7), (0.8, 0.2))
  def test_gray_splits_into_white_and_black(self, gray, expected_alpha):
    problem = augmented_lagrangian.PixelProblem(_white_and_black_registry())
    state = augmented_lagrangian.solve_pixel(problem, np.full(3, gray))

    self.assertAlmostEqual(float(state.alphas[0]), 1.0)
    self.assertAlmostEqual(float(state.alphas[1]), expected_alpha, delta=1e-2)
    np.testing.assert_allclose(state.colors[0], np.ones(3), atol=2e-2)
    np.testing.assert_allclose(state.colors[1], np.zeros(3), atol=2e-2)
    self.assertLess(state.constraint_norm, 5e-3)

  @parameterized.parameters(2, 3, 4, 5)
  def test_outer_loop_is_bounded_and_reduces_the_residual(self, num_layers):
    registry = test_utils.make_registry(num_layers, variance=0.05)
    stack = test_utils.random_layers(num_layers, seed=num_layers)
    target = np.asarray(
        composite.composite_layers(stack, registry.operators,
                                   registry.modes))[:3]
    problem = augmented_lagrangian.PixelProblem(registry)
    initial = augmented_lagrangian.initial_unknowns(problem)
    initial[0] = 1.0
    initial_norm = np.linalg.norm(problem.constraints(initial, target))

    states = []
    state = augmented_lagrangian.solve_pixel(
        problem, target, callback=states.append)

    self.assertLessEqual(state.iteration, 21)
    self.assertLen(states, state.iteration)
    self.assertIs(states[-1], state)
    self.assertLessEqual(state.constraint_norm, initial_norm)
    # A grown penalty must not let the next step's residual increase beyond
    # the convergence tolerance.
    config = augmented_lagrangian.SolverConfig()
    penalties = [config.initial_penalty] + [s.penalty for s in states]
    for step in range(1, len(states)):
      if penalties[step] > penalties[step - 1]:
        self.assertLessEqual(
            states[step].constraint_norm,
            states[step - 1].constraint_norm + config.tolerance)
    self.assertGreaterEqual(np.min(state.x), 0.0)
    self.assertLessEqual(np.max(state.x), 1.0)
    self.assertEqual(float(state.alphas[0]), 1.0)

  def test_iteration_cap(self):
    registry = test_utils.make_registry(3, variance=0.05)
    problem = augmented_lagrangian.PixelProblem(registry)
    config = augmented_lagrangian.SolverConfig(max_outer_iterations=0)
    state = augmented_lagrangian.solve_pixel(problem, [0.2, 0.7, 0.1], config)
    self.assertEqual(state.iteration, 1)

  def test_lagrangian_gradient_matches_autodiff(self):
    registry = test_utils.make_registry(3, mode=BlendMode.SCREEN)
    problem = augmented_lagrangian.PixelProblem(
        registry,
        energy_options=energy.EnergyOptions(use_sparsity=True),
        gray_layers=(2,))
    x = np.concatenate([[1.0, 0.4, 0.6], np.linspace(0.1, 0.9, 9)])
    target = np.array([0.4, 0.5, 0.6])
    multipliers = np.linspace(-1.0, 1.0, problem.num_constraints)

    value_fn = lambda x: problem.lagrangian_and_gradient(
        x, target, None, multipliers, 100.0)[0]
    _, gradient = problem.lagrangian_and_gradient(x, target, None, multipliers,
                                                  100.0)
    np.testing.assert_allclose(gradient, jax.grad(value_fn)(x), atol=1e-8)

  def test_refinement_pins_alphas(self):
    problem = augmented_lagrangian.PixelProblem(
        _white_and_black_registry(), refinement=True)
    self.assertEqual(problem.num_constraints, 5)
    target_alphas = np.array([1.0, 0.6])
    state = augmented_lagrangian.solve_pixel(
        problem,
        np.full(3, 0.5),
        target_alphas=target_alphas,
        initial_colors=np.array([[1.0, 1.0, 1.0], [0.0, 0.0, 0.0]]))

    np.testing.assert_allclose(state.alphas, target_alphas, atol=1e-2)
    self.assertLess(state.constraint_norm, 1e-2)
    composited = composite.composite_layers(
        energy.unknowns_to_layers(state.x, 2), problem.registry.operators,
        problem.registry.modes)
    np.testing.assert_allclose(composited[:3], np.full(3, 0.5), atol=1e-2)

  def test_background_color_is_held_fixed(self):
    problem = augmented_lagrangian.PixelProblem(
        _white_and_black_registry(), refinement=True)
    background = np.array([0.9, 0.8, 0.7])
    state = augmented_lagrangian.solve_pixel(
        problem,
        np.array([0.5, 0.45, 0.4]),
        target_alphas=np.array([1.0, 0.5]),
        background_color=background)
    np.testing.assert_allclose(state.colors[0], background)

  def test_transparent_background_is_free(self):
    problem = augmented_lagrangian.PixelProblem(_white_and_black_registry())
    state = augmented_lagrangian.solve_pixel(
        problem, np.full(3, 0.5), opaque_background=False)
    self.assertGreaterEqual(np.min(state.alphas), 0.0)
    self.assertLessEqual(np.max(state.alphas), 1.0)

  def test_target_alphas_must_match_the_problem(self):
    problem = augmented_lagrangian.PixelProblem(_white_and_black_registry())
    with self.assertRaisesRegex(ValueError, 'target_alphas'):
      augmented_lagrangian.solve_pixel(
          problem, np.full(3, 0.5), target_alphas=np.ones(2))
    refinement = augmented_lagrangian.PixelProblem(
        _white_and_black_registry(), refinement=True)
    with self.assertRaisesRegex(ValueError, 'target_alphas'):
      augmented_lagrangian.solve_pixel(refinement, np.full(3, 0.5))

  def test_background_color_requires_opaque_background(self):
    problem = augmented_lagrangian.PixelProblem(_white_and_black_registry())
    with self.assertRaisesRegex(ValueError, 'opaque background'):
      augmented_lagrangian.solve_pixel(
          problem,
          np.full(3, 0.5),
          opaque_background=False,
          background_color=np.ones(3))

  def test_gray_layer_index_is_validated(self):
    with self.assertRaisesRegex(ValueError, 'out of range'):
      augmented_lagrangian.PixelProblem(
          _white_and_black_registry(), gray_layers=(2,))


if __name__ == '__main__':
  absltest.main()
