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

"""Pixel-parallel execution on a thread pool."""

from concurrent import futures
import os
from typing import Callable


def resolve_concurrency(target_concurrency: int) -> int:
  """Returns the worker count for a target concurrency (0 means all cores)."""
  if target_concurrency < 0:
    raise ValueError(
        f'target_concurrency must be >= 0, but found {target_concurrency}')
  if target_concurrency == 0:
    return os.cpu_count() or 1
  return target_concurrency


def parallel_for_2d(width: int,
                    height: int,
                    process: Callable[[int, int], None],
                    target_concurrency: int = 0) -> None:
  """Calls process(x, y) exactly once for every pixel of a width x height grid.

  Calls happen in no particular order and may run concurrently, so `process`
  must only write to state owned by its own (x, y). Blocks until every call
  has finished, then re-raises the first exception raised by any call.

  Args:
    width: number of columns.
    height: number of rows.
    process: the per-pixel function.
    target_concurrency: number of worker threads, 0 for one per CPU core.
  """
  num_workers = resolve_concurrency(target_concurrency)

  # One task per row keeps the scheduling overhead small for large images.
  def process_row(y):
    for x in range(width):
      process(x, y)

  with futures.ThreadPoolExecutor(max_workers=num_workers) as executor:
    tasks = [executor.submit(process_row, y) for y in range(height)]
    for task in futures.as_completed(tasks):
      task.result()
