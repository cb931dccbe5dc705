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

"""Test utility functions for comparing float images with error tolerance.
"""

import os

from unblend.jax.utils import image as image_lib
import numpy as np


def images_are_near(baseline_image,
                    result_image,
                    max_outlier_fraction=0.005,
                    pixel_error_threshold=0.04):
  """Compares two [0, 1] scaled image arrays.

  The comparison is soft: the images are considered identical if fewer than
  max_outlier_fraction of the pixels differ by more than pixel_error_threshold
  in any channel.

  Args:
    baseline_image: a numpy array containing the baseline image.
    result_image: a numpy array containing the result image.
    max_outlier_fraction: fraction of pixels that may vary by more than the
      error threshold. 0.005 means 0.5% of pixels.
    pixel_error_threshold: pixel values are considered to differ if their
      difference exceeds this amount. Range is 0.0 - 1.0.

  Returns:
    A (boolean, string) tuple where the first value is whether the images
    matched, and the second is a pretty-printed summary of the differences.
  """
  baseline_image = np.asarray(baseline_image, dtype=float)
  result_image = np.asarray(result_image, dtype=float)
  if baseline_image.shape != result_image.shape:
    return False, ("Image shapes %s and %s do not match" %
                   (np.array_str(np.array(baseline_image.shape)),
                    np.array_str(np.array(result_image.shape))))

  difference = np.abs(baseline_image - result_image)
  outlier_channels = difference > pixel_error_threshold
  if len(baseline_image.shape) > 2:
    outlier_pixels = np.any(outlier_channels, axis=2)
  else:
    outlier_pixels = outlier_channels
  outlier_fraction = np.count_nonzero(outlier_pixels) / np.prod(
      baseline_image.shape[:2])
  images_match = outlier_fraction <= max_outlier_fraction
  message = (" (%f of pixels are outliers, maximum allowed is %f, largest "
             "difference is %f) " %
             (outlier_fraction, max_outlier_fraction,
              np.max(difference, initial=0.0)))
  return images_match, message


def expect_images_are_near(test,
                           baseline_image,
                           result_image,
                           max_outlier_fraction=0.005,
                           pixel_error_threshold=0.04):
  """A convenience wrapper around images_are_near that adds a test assertion."""
  images_match, message = images_are_near(baseline_image, result_image,
                                          max_outlier_fraction,
                                          pixel_error_threshold)
  test.assertTrue(images_match, msg=message)


def expect_images_are_near_and_save_comparison(test,
                                               baseline_image,
                                               result_image,
                                               comparison_name,
                                               images_differ_message,
                                               max_outlier_fraction=0.005,
                                               pixel_error_threshold=0.04):
  """A convenience wrapper around images_are_near that saves comparison images.

  If the images differ and the TEST_UNDECLARED_OUTPUTS_DIR environment
  variable is set, this function writes the baseline, result and difference
  images into that directory.

  Args:
    test: a python unit test instance.
    baseline_image: baseline image as a numpy array.
    result_image: the result image as a numpy array.
    comparison_name: a string naming this comparison's output files.
    images_differ_message: the test message to display if the images differ.
    max_outlier_fraction: fraction of pixels that may vary by more than the
      error threshold. 0.005 means 0.5% of pixels.
    pixel_error_threshold: pixel values are considered to differ if their
      difference exceeds this amount. Range is 0.0 - 1.0.
  """
  images_match, comparison_message = images_are_near(baseline_image,
                                                     result_image,
                                                     max_outlier_fraction,
                                                     pixel_error_threshold)

  outputs_dir = os.environ.get("TEST_UNDECLARED_OUTPUTS_DIR")
  if not images_match and outputs_dir:
    for suffix, image in (("baseline", baseline_image),
                          ("result", result_image)):
      image_lib.save_image(
          image, os.path.join(outputs_dir,
                              "{}_{}.png".format(comparison_name, suffix)))
    if np.shape(baseline_image) == np.shape(result_image):
      difference = np.abs(
          np.asarray(baseline_image, dtype=float) -
          np.asarray(result_image, dtype=float))
      if difference.ndim == 3:
        difference = difference[..., :3]
      image_lib.save_image(
          difference,
          os.path.join(outputs_dir, "{}_diff_rgb.png".format(comparison_name)))

  test.assertTrue(images_match, msg=images_differ_message + comparison_message)
