# Copyright 2024 The LAST Authors.
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

"""Semirings used by the lattice dynamic programs."""

from collections.abc import Sequence
from typing import Any, Generic, Optional, TypeVar

import torch
from torch.nn import functional as F

DType = Any
T = TypeVar('T')


class Semiring(Generic[T]):
  """Base Semiring interface.

  See https://en.wikipedia.org/wiki/Semiring for what a semiring is. A Semiring
  object holds methods that implement the semiring operations over tensors. The
  lattices in this package only ever need three of them: the real semiring
  (probability space, mostly useful for testing), the log semiring (sum-product
  in log space) and the max tropical semiring (max-product in log space).

  Semiring is not an abstract base class because we allow operations to be
  unimplemented.
  """

  def zeros(self, shape: Sequence[int], dtype: Optional[DType] = None) -> T:
    """Semiring zeros in the given shape and dtype."""
    raise NotImplementedError

  def ones(self, shape: Sequence[int], dtype: Optional[DType] = None) -> T:
    """Semiring ones in the given shape and dtype."""
    raise NotImplementedError

  def times(self, a: T, b: T) -> T:
    """Semiring multiplication between two values."""
    raise NotImplementedError

  def plus(self, a: T, b: T) -> T:
    """Semiring addition between two values."""
    raise NotImplementedError

  def prod(self, a: T, dim: int) -> T:
    """Semiring multiplication along a single axis."""
    raise NotImplementedError

  def sum(self, a: T, dim: int) -> T:
    """Semiring addition along a single axis."""
    raise NotImplementedError


def _check_axis(a: torch.Tensor, dim: int) -> int:
  """Validates a reduction axis and returns it as a non-negative int."""
  if not isinstance(dim, int):
    raise ValueError(f'Only int axis is supported, got dim={dim!r}')
  if not -a.ndim <= dim < a.ndim:
    raise ValueError(
        f'Invalid reduction axis={dim!r} for input shape {tuple(a.shape)}')
  return dim + a.ndim if dim < 0 else dim


def _reduced_shape(a: torch.Tensor, dim: int) -> tuple[int, ...]:
  return tuple(a.shape[:dim]) + tuple(a.shape[dim + 1:])


class _Real(Semiring[torch.Tensor]):
  """Real semiring."""

  @staticmethod
  def zeros(
      shape: Sequence[int], dtype: Optional[DType] = None) -> torch.Tensor:
    return torch.zeros(shape, dtype=dtype)

  @staticmethod
  def ones(shape: Sequence[int], dtype: Optional[DType] = None) -> torch.Tensor:
    return torch.ones(shape, dtype=dtype)

  @staticmethod
  def times(a: torch.Tensor, b: torch.Tensor) -> torch.Tensor:
    return a * b

  @staticmethod
  def plus(a: torch.Tensor, b: torch.Tensor) -> torch.Tensor:
    return a + b

  @staticmethod
  def prod(a: torch.Tensor, dim: int) -> torch.Tensor:
    return torch.prod(a, dim)

  @staticmethod
  def sum(a: torch.Tensor, dim: int) -> torch.Tensor:
    return torch.sum(a, dim)


Real = _Real()


# Specialized log{add,sum}exp with safe gradients.
#
# -   All operands are -inf: the sum is -inf and the gradient is 0. This is the
#     common case of a lattice node that no path reaches, and must not turn
#     into NaN.
# -   Mixed finite & -inf operands: -inf operands get a 0 gradient.
# -   Any +inf operand: the sum is +inf and the gradient is NaN. +inf is never a
#     legitimate weight, so such issues are not silenced.


class _LogAddExp(torch.autograd.Function):
  """log(exp(a) + exp(b)) with safe gradients."""

  @staticmethod
  def forward(ctx, a, b):
    c = torch.maximum(a, b)
    c = torch.where(torch.isfinite(c), c, torch.zeros_like(c))
    ea = torch.exp(a - c)
    eb = torch.exp(b - c)
    z = ea + eb
    ctx.save_for_backward(ea, eb, z)
    return c + torch.log(z)

  @staticmethod
  def backward(ctx, g):
    ea, eb, z = ctx.saved_tensors
    z = torch.where(z != 0, z, torch.ones_like(z))
    scale = g / z
    return scale * ea, scale * eb


_logaddexp = _LogAddExp.apply


class _LogSumExp(torch.autograd.Function):
  """log(sum(exp(a), dim)) with safe gradients."""

  @staticmethod
  def forward(ctx, a, dim):
    c = torch.amax(a, dim=dim, keepdim=True)
    c = torch.where(torch.isfinite(c), c, torch.zeros_like(c))
    e = torch.exp(a - c)
    z = torch.sum(e, dim=dim, keepdim=True)
    ctx.save_for_backward(e, z)
    ctx.dim = dim
    return torch.squeeze(c + torch.log(z), dim)

  @staticmethod
  def backward(ctx, g):
    e, z = ctx.saved_tensors
    z = torch.where(z != 0, z, torch.ones_like(z))
    return torch.unsqueeze(g, ctx.dim) / z * e, None


_logsumexp = _LogSumExp.apply


class _Log(Semiring[torch.Tensor]):
  """Log semiring."""

  @staticmethod
  def zeros(
      shape: Sequence[int], dtype: Optional[DType] = None) -> torch.Tensor:
    return torch.full(shape, -torch.inf, dtype=dtype)

  @staticmethod
  def ones(shape: Sequence[int], dtype: Optional[DType] = None) -> torch.Tensor:
    return torch.zeros(shape, dtype=dtype)

  @staticmethod
  def times(a: torch.Tensor, b: torch.Tensor) -> torch.Tensor:
    return a + b

  @staticmethod
  def plus(a: torch.Tensor, b: torch.Tensor) -> torch.Tensor:
    a, b = torch.broadcast_tensors(a, b)
    return _logaddexp(a, b)

  @staticmethod
  def prod(a: torch.Tensor, dim: int) -> torch.Tensor:
    return torch.sum(a, dim)

  @classmethod
  def sum(cls, a: torch.Tensor, dim: int) -> torch.Tensor:
    dim = _check_axis(a, dim)
    if torch.numel(a) > 0:
      return _logsumexp(a, dim)
    # Summing empty input should result in zeros.
    return cls.zeros(_reduced_shape(a, dim), a.dtype)


Log = _Log()


class _Maximum(torch.autograd.Function):
  """Elementwise maximum whose gradient goes to exactly one operand."""

  @staticmethod
  def forward(ctx, a, b):
    choose_a = a >= b
    ctx.save_for_backward(choose_a)
    return torch.where(choose_a, a, b)

  @staticmethod
  def backward(ctx, g):
    choose_a, = ctx.saved_tensors
    choose_a = choose_a.to(g.dtype)
    return g * choose_a, g * (1 - choose_a)


_maximum = _Maximum.apply


class _Max(torch.autograd.Function):
  """Maximum along an axis whose gradient goes to exactly one element."""

  @staticmethod
  def forward(ctx, a, dim):
    values, argmax = torch.max(a, dim=dim)
    ctx.save_for_backward(argmax)
    ctx.dim = dim
    ctx.width = a.shape[dim]
    return values

  @staticmethod
  def backward(ctx, g):
    argmax, = ctx.saved_tensors
    mask = F.one_hot(argmax, ctx.width).to(g.dtype)
    mask = torch.movedim(mask, -1, ctx.dim)
    return torch.unsqueeze(g, ctx.dim) * mask, None


_max = _Max.apply


class _MaxTropical(Semiring[torch.Tensor]):
  """Max tropical semiring.

  The gradients of `plus` and `sum` are guaranteed to be non-zero on exactly 1
  input element, even in the event of a tie. Ties are resolved in favour of the
  first element, which is also what `sum_with_argmax` reports.
  """

  @staticmethod
  def zeros(
      shape: Sequence[int], dtype: Optional[DType] = None) -> torch.Tensor:
    return torch.full(shape, -torch.inf, dtype=dtype)

  @staticmethod
  def ones(shape: Sequence[int], dtype: Optional[DType] = None) -> torch.Tensor:
    return torch.zeros(shape, dtype=dtype)

  @staticmethod
  def times(a: torch.Tensor, b: torch.Tensor) -> torch.Tensor:
    return a + b

  @staticmethod
  def plus(a: torch.Tensor, b: torch.Tensor) -> torch.Tensor:
    a, b = torch.broadcast_tensors(a, b)
    return _maximum(a, b)

  @staticmethod
  def prod(a: torch.Tensor, dim: int) -> torch.Tensor:
    return torch.sum(a, dim)

  @classmethod
  def sum(cls, a: torch.Tensor, dim: int) -> torch.Tensor:
    dim = _check_axis(a, dim)
    if torch.numel(a) > 0:
      return _max(a, dim)
    return cls.zeros(_reduced_shape(a, dim), a.dtype)

  @classmethod
  def sum_with_argmax(
      cls, a: torch.Tensor, dim: int) -> tuple[torch.Tensor, torch.Tensor]:
    """Semiring addition along an axis, also returning the winning indices.

    Args:
      a: Values to reduce.
      dim: Reduction axis. Must not be zero-sized.

    Returns:
      (values, argmax) tuple. On ties argmax is the first maximal index.
    """
    dim = _check_axis(a, dim)
    if a.shape[dim] == 0:
      raise ValueError(f'Cannot take argmax over zero-sized axis dim={dim}')
    values, argmax = torch.max(a, dim=dim)
    return values, argmax


MaxTropical = _MaxTropical()
