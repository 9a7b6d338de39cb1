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

"""Tests for sequences."""

from absl.testing import absltest
import torch
from lattice_crf import sequences
import numpy.testing as npt


class AlphabetTest(absltest.TestCase):

  def test_lookup(self):
    alphabet = sequences.Alphabet(['a', 'b'])
    self.assertLen(alphabet, 2)
    self.assertEqual(alphabet.lookup_index('b'), 1)
    self.assertEqual(alphabet.lookup_index('c'), 2)
    self.assertEqual(alphabet.lookup_object(2), 'c')
    self.assertEqual(alphabet.lookup_objects([2, 0]), ['c', 'a'])
    self.assertIn('c', alphabet)
    with self.assertRaises(KeyError):
      alphabet.lookup_index('d', add=False)
    with self.assertRaises(IndexError):
      alphabet.lookup_object(3)

  def test_stop_growth(self):
    alphabet = sequences.Alphabet(['a'])
    alphabet.stop_growth()
    self.assertTrue(alphabet.growth_stopped)
    with self.assertRaises(KeyError):
      alphabet.lookup_index('b')
    self.assertEqual(alphabet.lookup_indices(['a', 'a']), [0, 0])


class FeatureVectorSequenceTest(absltest.TestCase):

  def test_from_feature_names(self):
    alphabet = sequences.Alphabet()
    seq = sequences.FeatureVectorSequence.from_feature_names(
        [['w=the', 'cap'], ['w=cat']], alphabet)
    self.assertLen(seq, 2)
    self.assertEqual(seq[0], {0: 1.0, 1: 1.0})
    self.assertEqual(seq.max_feature_index(), 2)
    alphabet.stop_growth()
    seq = sequences.FeatureVectorSequence.from_feature_names(
        [['w=dog', 'cap']], alphabet)
    self.assertEqual(seq[0], {1: 1.0})

  def test_to_dense(self):
    seq = sequences.FeatureVectorSequence([{0: 2.0}, {}, {2: -1.0, 1: 0.5}])
    npt.assert_array_equal(
        seq.to_dense(3), [[2., 0., 0.], [0., 0., 0.], [0., 0.5, -1.]])
    self.assertEqual(seq.to_dense(3).dtype, torch.float64)
    with self.assertRaisesRegex(ValueError, 'outside the model feature range'):
      seq.to_dense(2)


class InstanceTest(absltest.TestCase):

  def test_basics(self):
    data = sequences.FeatureVectorSequence([{}, {}])
    instance = sequences.Instance(data, [1, 0], name='x')
    self.assertEqual(instance.target, (1, 0))
    self.assertLen(instance, 2)
    self.assertEqual(instance.display_name(3), 'x')
    self.assertEqual(
        sequences.Instance(data).display_name(3), 'instance#3')
    with self.assertRaisesRegex(ValueError, '2 input positions but 1 target'):
      sequences.Instance(data, [0])


if __name__ == '__main__':
  absltest.main()
