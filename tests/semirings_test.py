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

"""Tests for semirings."""

from absl.testing import absltest

from lattice_crf import semirings
import torch
import numpy.testing as npt


def zero_and_one_test(semiring):
  one = semiring.ones([3])
  zero = semiring.zeros([3])
  xs = torch.Tensor([1., 2., 3.])

  for args in [(one, xs), (xs, one)]:
    npt.assert_array_equal(semiring.times(*args), xs)
    npt.assert_array_equal(semiring.prod(torch.stack(args), dim=0), xs)

    npt.assert_array_equal(
        semiring.times(semiring.ones((1, 2)), semiring.zeros((3, 1))),
        semiring.zeros((3, 2)))
    npt.assert_array_equal(
        semiring.times(semiring.ones((1, 2)), semiring.ones((3, 1))),
        semiring.ones((3, 2)))

    npt.assert_array_equal(
        semiring.plus(semiring.ones((1, 2)), semiring.zeros((3, 1))),
        semiring.ones((3, 2)))
    npt.assert_array_equal(
        semiring.plus(semiring.zeros((1, 2)), semiring.zeros((3, 1))),
        semiring.zeros((3, 2)))

    npt.assert_array_equal(
        semiring.sum(torch.zeros([3, 0]), dim=0), torch.zeros([0]))
    npt.assert_array_equal(semiring.sum(torch.zeros([3, 0]), dim=1), zero)
    npt.assert_array_equal(semiring.prod(torch.zeros([3, 0]), dim=1), one)


def binary_op_broadcasting_test_times(semiring):
  for shapes in [
      ([], [2]),
      ([1], [2]),
      ([1, 2], [3, 2]),
      ([2, 1], [2, 3]),
      ([3], [2, 3]),
  ]:
    for shape_x, shape_y in [shapes, shapes[::-1]]:
      err_msg = f'shapes={(shape_x, shape_y)}'
      x = semiring.ones(shape_x)
      y = semiring.ones(shape_y)
      z, vjp_fn = torch.func.vjp(semiring.times, x, y)
      dx, dy = vjp_fn(torch.ones_like(z))
      expected_z, expected_vjp_fn = torch.func.vjp(
          lambda x, y: semiring.times(*torch.broadcast_tensors(x, y)), x, y)
      expected_dx, expected_dy = expected_vjp_fn(torch.ones_like(expected_z))
      npt.assert_allclose(z, expected_z, err_msg=err_msg)
      npt.assert_allclose(dx, expected_dx, err_msg=err_msg)
      npt.assert_allclose(dy, expected_dy, err_msg=err_msg)


def check_sum_axis(self, semiring):
  """Checks that semiring sum handles axes correctly."""
  xs = torch.arange(
      2 * 3 * 4 * 5, dtype=torch.float64).reshape([2, 3, 4, 5]).requires_grad_()

  with self.subTest('forward'):
    self.assertEqual(semiring.sum(xs, dim=0).shape, (3, 4, 5))
    self.assertEqual(semiring.sum(xs, dim=1).shape, (2, 4, 5))
    self.assertEqual(semiring.sum(xs, dim=3).shape, (2, 3, 4))
    self.assertEqual(semiring.sum(xs, dim=-1).shape, (2, 3, 4))
    self.assertEqual(semiring.sum(xs, dim=-4).shape, (3, 4, 5))
    with self.assertRaisesRegex(ValueError, 'Invalid reduction axis'):
      semiring.sum(xs, dim=4)
    with self.assertRaisesRegex(ValueError, 'Invalid reduction axis'):
      semiring.sum(xs, dim=-5)
    with self.assertRaisesRegex(ValueError, 'Only int axis'):
      semiring.sum(xs, dim=None)  # type: ignore

  with self.subTest('backward'):
    for dim in range(-4, 4):
      y = torch.sum(semiring.sum(xs, dim=dim))
      grad = torch.autograd.grad(y, xs)[0]
      self.assertEqual(grad.shape, xs.shape)
      # Every reduced slice distributes a total gradient of 1.
      npt.assert_allclose(torch.sum(grad).item(), grad.numel() // xs.shape[dim])


def check_sum_zero_sized(self, semiring):
  """Checks that semiring sum handles zero-sized dimensions correctly."""
  xs = torch.zeros([0, 2])

  npt.assert_array_equal(semiring.sum(xs, dim=0), semiring.zeros([2]))
  npt.assert_array_equal(semiring.sum(xs, dim=-2), semiring.zeros([2]))

  self.assertEqual(semiring.sum(xs, dim=1).shape, (0,))
  self.assertEqual(semiring.sum(xs, dim=-1).shape, (0,))


class RealTest(absltest.TestCase):

  def test_basics(self):
    npt.assert_array_equal(
        semirings.Real.times(torch.Tensor([2]), torch.Tensor([3])), 6)
    npt.assert_array_equal(semirings.Real.prod(torch.Tensor([2, 3]), dim=0), 6)
    npt.assert_array_equal(
        semirings.Real.plus(torch.Tensor([2]), torch.Tensor([3])), 5)
    npt.assert_array_equal(semirings.Real.sum(torch.Tensor([2, 3]), dim=0), 5)
    zero_and_one_test(semirings.Real)
    binary_op_broadcasting_test_times(semirings.Real)


class LogTest(absltest.TestCase):

  def test_basics(self):
    npt.assert_array_equal(
        semirings.Log.times(torch.Tensor([2]), torch.Tensor([3])), 5)
    self.assertEqual(semirings.Log.prod(torch.Tensor([2, 3]), dim=0), 5)
    npt.assert_allclose(
        semirings.Log.plus(torch.Tensor([2]), torch.Tensor([3])), 3.31326169)
    npt.assert_allclose(
        semirings.Log.sum(torch.Tensor([2, 3]), dim=0), 3.31326169)
    zero_and_one_test(semirings.Log)
    binary_op_broadcasting_test_times(semirings.Log)

  def test_sum_axis(self):
    check_sum_axis(self, semirings.Log)

  def test_sum_zero_sized(self):
    check_sum_zero_sized(self, semirings.Log)

  def test_large_values(self):
    x = torch.tensor([1000., 1000.], dtype=torch.float64)
    npt.assert_allclose(semirings.Log.sum(x, dim=0), 1000. + torch.log(
        torch.tensor(2., dtype=torch.float64)))
    npt.assert_allclose(
        semirings.Log.plus(torch.tensor(-1000.), torch.tensor(-1000.)),
        -1000. + 0.69314718)

  def test_sum_grad_safety(self):
    with self.subTest('all -inf'):
      x = torch.full([3], -torch.inf, dtype=torch.float64).requires_grad_()
      y = semirings.Log.sum(x, dim=0)
      self.assertEqual(y.item(), -float('inf'))
      grad, = torch.autograd.grad(y, x)
      npt.assert_array_equal(grad, [0., 0., 0.])

    with self.subTest('mixed'):
      x = torch.tensor([0., -torch.inf], dtype=torch.float64).requires_grad_()
      y = semirings.Log.sum(x, dim=0)
      npt.assert_array_equal(y.detach(), 0.)
      grad, = torch.autograd.grad(y, x)
      npt.assert_array_equal(grad, [1., 0.])

    with self.subTest('+inf'):
      x = torch.tensor([0., torch.inf], dtype=torch.float64).requires_grad_()
      y = semirings.Log.sum(x, dim=0)
      self.assertEqual(y.item(), float('inf'))

  def test_plus_grad_safety(self):
    a = torch.tensor([-torch.inf, 0.], dtype=torch.float64).requires_grad_()
    b = torch.tensor([-torch.inf, -torch.inf],
                     dtype=torch.float64).requires_grad_()
    c = semirings.Log.plus(a, b)
    npt.assert_array_equal(c.detach(), [-float('inf'), 0.])
    da, db = torch.autograd.grad(c[1], (a, b), retain_graph=True)
    npt.assert_array_equal(da, [0., 1.])
    npt.assert_array_equal(db, [0., 0.])
    da, db = torch.autograd.grad(c[0], (a, b))
    npt.assert_array_equal(da, [0., 0.])
    npt.assert_array_equal(db, [0., 0.])

  def test_sum_grad_is_softmax(self):
    x = torch.tensor([[1., 2., 3.], [0., -1., 5.]],
                     dtype=torch.float64).requires_grad_()
    y = torch.sum(semirings.Log.sum(x, dim=-1))
    grad, = torch.autograd.grad(y, x)
    npt.assert_allclose(grad, torch.softmax(x.detach(), dim=-1))


class MaxTropicalTest(absltest.TestCase):

  def test_basics(self):
    npt.assert_array_equal(
        semirings.MaxTropical.times(torch.Tensor([2]), torch.Tensor([3])), 5)
    npt.assert_array_equal(
        semirings.MaxTropical.prod(torch.Tensor([2, 3]), dim=0), 5)
    npt.assert_array_equal(
        semirings.MaxTropical.plus(torch.Tensor([2]), torch.Tensor([3])), 3)
    npt.assert_array_equal(
        semirings.MaxTropical.sum(torch.Tensor([2, 3]), dim=0), 3)
    zero_and_one_test(semirings.MaxTropical)
    binary_op_broadcasting_test_times(semirings.MaxTropical)

  def test_plus_grad(self):
    a = torch.Tensor([[1., 2., 3.], [0., 2., 4.]]).requires_grad_()
    y = torch.sum(semirings.MaxTropical.plus(a[0], a[1]))
    gradient = torch.autograd.grad(y, a)[0]
    npt.assert_array_equal(gradient, [[1., 1., 0.], [0., 0., 1.]])

  def test_sum_grad(self):
    a = torch.Tensor([[1., 2., 3.], [0., 2., 4.]]).requires_grad_()
    y = torch.sum(semirings.MaxTropical.sum(a, dim=0))
    gradient = torch.autograd.grad(y, a)[0]
    npt.assert_array_equal(gradient, [[1., 1., 0.], [0., 0., 1.]])

    a = torch.Tensor([[1., 2., 3.], [0., 2., 4.]]).T.requires_grad_()
    y = torch.sum(semirings.MaxTropical.sum(a, dim=-1))
    gradient = torch.autograd.grad(y, a)[0]
    npt.assert_array_equal(gradient, torch.Tensor([[1., 1., 0.],
                                                   [0., 0., 1.]]).T)

  def test_sum_axis(self):
    check_sum_axis(self, semirings.MaxTropical)

  def test_sum_zero_sized(self):
    check_sum_zero_sized(self, semirings.MaxTropical)

  def test_sum_with_argmax(self):
    values, argmax = semirings.MaxTropical.sum_with_argmax(
        torch.tensor([[1., 5., 5.], [-torch.inf, 0., -1.]]), dim=-1)
    npt.assert_array_equal(values, [5., 0.])
    npt.assert_array_equal(argmax, [1, 1])
    with self.assertRaisesRegex(ValueError, 'zero-sized'):
      semirings.MaxTropical.sum_with_argmax(torch.zeros([2, 0]), dim=1)


if __name__ == '__main__':
  absltest.main()
