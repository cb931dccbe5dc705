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

"""Enums and default numerical constants shared by the unblend modules."""

import enum

import jax

# Penalty-scaled gradients in the per-pixel solves need double precision.
jax.config.update('jax_enable_x64', True)


class BlendMode(enum.Enum):
  """Channel-separable blend modes. Values are the canonical mode names."""
  NORMAL = 'Normal'
  MULTIPLY = 'Multiply'
  SCREEN = 'Screen'
  OVERLAY = 'Overlay'
  DARKEN = 'Darken'
  LIGHTEN = 'Lighten'
  COLOR_DODGE = 'ColorDodge'
  COLOR_BURN = 'ColorBurn'
  HARD_LIGHT = 'HardLight'
  SOFT_LIGHT = 'SoftLight'
  DIFFERENCE = 'Difference'
  EXCLUSION = 'Exclusion'
  LINEAR_DODGE = 'LinearDodge'


# Guards the near-singular denominators of ColorDodge and ColorBurn.
BLEND_FUNCTION_EPSILON = 1e-5

# Composited alphas below this value are not divided out of the color.
COMPOSITE_ALPHA_EPSILON = 1e-12

# Gray-layer constraint Jacobians are zeroed below this color norm.
GRAY_CONSTRAINT_EPSILON = 1e-3

# Energy regularizer weights.
SPARSITY_WEIGHT = 10.0
MINIMUM_ALPHA_WEIGHT = 0.01

# Augmented-Lagrangian hyperparameters.
PENALTY_DECREASE_RATIO = 0.25  # gamma
PENALTY_GROWTH_FACTOR = 10.0  # beta
INITIAL_PENALTY = 100.0
CONVERGENCE_EPSILON = 5e-3
INNER_GRADIENT_TOLERANCE = 5e-3
MAX_OUTER_ITERATIONS = 20
MAX_INNER_ITERATIONS = 1000

# Initial alpha of every layer before the first solve.
INITIAL_ALPHA = 0.5

# Guided filter regularizer and the window radius, in thousandths of the
# shorter image side.
GUIDED_FILTER_EPSILON = 1e-4
GUIDED_FILTER_RADIUS_PER_MILLE = 60
