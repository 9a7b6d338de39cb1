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

"""Tests for transducers."""

import re

from absl.testing import absltest
import torch
from lattice_crf import constraints
from lattice_crf import lattices
from lattice_crf import semirings
from lattice_crf import sequences
from lattice_crf import transducers
import numpy.testing as npt

INF = float('inf')


def two_state_transducer():
  transducer = transducers.Transducer()
  transducer.add_fully_connected_states(['a', 'b'])
  return transducer


class TransducerTest(absltest.TestCase):

  def test_fully_connected_basics(self):
    transducer = two_state_transducer()
    self.assertEqual(transducer.num_states(), 2)
    self.assertEqual(transducer.num_transitions(), 4)
    self.assertEqual(transducer.num_labels(), 2)
    self.assertEqual(transducer.num_weight_groups(), 4)
    self.assertEqual(transducer.state_index('b'), 1)
    self.assertEqual(transducer.state(0).name, 'a')
    self.assertEqual(list(transducer.label_alphabet), ['a', 'b'])
    self.assertEqual(list(transducer.weight_alphabet),
                     ['a->a:a', 'a->b:b', 'b->a:a', 'b->b:b'])
    source, destination, label = transducer.arcs()
    npt.assert_array_equal(source, [0, 0, 1, 1])
    npt.assert_array_equal(destination, [0, 1, 0, 1])
    npt.assert_array_equal(label, [0, 1, 0, 1])
    self.assertEqual(
        [t.destination for t in transducer.transitions_from(1)], [0, 1])
    self.assertEqual([t.index for t in transducer.transitions_into(1)], [1, 3])
    npt.assert_array_equal(transducer.initial_weights(), [0., 0.])
    npt.assert_array_equal(transducer.final_weights(), [0., 0.])

  def test_forward_backward_reduce(self):
    transducer = two_state_transducer()
    weights = torch.Tensor([[1, 2, 3, 4], [0, 0, 0, 1]])
    npt.assert_array_equal(
        transducer.forward_reduce(weights, semirings.Real), [[4, 6], [0, 1]])
    npt.assert_array_equal(
        transducer.backward_reduce(weights, semirings.Real), [[3, 7], [0, 1]])
    npt.assert_array_equal(
        transducer.forward_reduce(weights[0], semirings.MaxTropical), [3, 4])
    npt.assert_array_equal(
        transducer.forward_reduce(
            torch.full([4], -INF), semirings.Log), [-INF, -INF])

  def test_gather(self):
    transducer = two_state_transducer()
    npt.assert_array_equal(
        transducer.gather_source(torch.Tensor([10, 20])), [10, 10, 20, 20])
    npt.assert_array_equal(
        transducer.gather_destination(torch.Tensor([[10, 20]])),
        [[10, 20, 10, 20]])
    with self.assertRaisesRegex(ValueError,
                                r'weights\.shape\[-1\] should be 2'):
      transducer.gather_source(torch.zeros([3]))
    with self.assertRaisesRegex(ValueError,
                                r'weights\.shape\[-1\] should be 4'):
      transducer.forward_reduce(torch.zeros([3]), semirings.Log)

  def test_weight_groups(self):
    transducer = transducers.Transducer()
    transducer.add_state(
        'x', destinations=['x', 'y'], labels=['p', 'q'],
        weight_names=['w', ['w', 'v']])
    transducer.add_state('y', final_weight=-1.0)
    self.assertEqual(transducer.num_weight_groups(), 2)
    self.assertEqual(transducer.transitions()[1].weight_groups, (0, 1))
    npt.assert_array_equal(transducer.weight_incidence(), [[1, 0], [1, 1]])
    npt.assert_array_equal(transducer.label_incidence(), [[1, 0], [0, 1]])
    npt.assert_array_equal(transducer.final_weights(), [0., -1.])

  def test_destinations_resolved_lazily(self):
    transducer = transducers.Transducer()
    transducer.add_state('x', destinations=['y'])
    transducer.add_state('y', destinations=['x'])
    self.assertEqual(transducer.num_transitions(), 2)
    self.assertEqual(transducer.transitions_from(0)[0].destination, 1)

  def test_start_state(self):
    transducer = two_state_transducer()
    start = transducer.add_start_state()
    self.assertEqual(start, 2)
    self.assertEqual(transducer.state(start).name, '<START>')
    npt.assert_array_equal(transducer.initial_weights(), [-INF, -INF, 0.])
    self.assertEqual(transducer.num_transitions(), 6)
    self.assertEqual(transducer.num_labels(), 2)
    transducer.set_as_start_state(0)
    npt.assert_array_equal(transducer.initial_weights(), [0., -INF, -INF])

  def test_states_connected_as_in(self):
    labels = sequences.Alphabet(['x', 'y'])
    data = sequences.FeatureVectorSequence([{}, {}])
    transducer = transducers.Transducer(labels)
    transducer.add_states_for_labels_connected_as_in([
        sequences.Instance(data, [0, 1]),
        sequences.Instance(data, [1, 1]),
    ])
    self.assertEqual(
        [(t.source, t.destination, t.label)
         for t in transducer.transitions()], [(0, 1, 1), (1, 1, 1)])

  def test_invalid(self):
    transducer = two_state_transducer()
    with self.assertRaisesRegex(ValueError, 'already exists'):
      transducer.add_state('a')
    with self.assertRaisesRegex(ValueError, '2 destinations but 1 labels'):
      transducer.add_state('c', destinations=['a', 'b'], labels=['a'])
    with self.assertRaises(IndexError):
      transducer.state(2)
    with self.assertRaises(IndexError):
      transducer.transitions_from(-1)
    with self.assertRaises(IndexError):
      transducer.set_as_start_state(5)
    with self.assertRaises(KeyError):
      transducer.state_index('zz')
    transducer.add_state('c', destinations=['d'])
    with self.assertRaisesRegex(ValueError, "unknown state 'd'"):
      transducer.num_transitions()



class LabelStatesTest(absltest.TestCase):

  def test_fully_connected_states_for_integer_labels(self):
    transducer = transducers.Transducer(sequences.Alphabet([0, 1]))
    transducer.add_fully_connected_states_for_labels()
    self.assertEqual([s.name for s in transducer.states()], ['0', '1'])
    self.assertEqual(list(transducer.label_alphabet), [0, 1])
    self.assertEqual([t.label for t in transducer.transitions()], [0, 1, 0, 1])
    start = transducer.add_start_state()
    self.assertEqual([t.label for t in transducer.transitions_from(start)],
                     [0, 1])
    self.assertEqual(list(transducer.label_alphabet), [0, 1])
    lattice = lattices.SumLattice(
        transducer, torch.zeros([2, 6], dtype=torch.float64),
        transducer.initial_weights(), transducer.final_weights(),
        constraints.Constraint.exact([1, 0]))
    self.assertEqual(lattice.total_weight.item(), 0.)

  def test_states_connected_as_in_for_integer_labels(self):
    data = sequences.FeatureVectorSequence([{}, {}])
    transducer = transducers.Transducer(sequences.Alphabet([0, 1]))
    transducer.add_states_for_labels_connected_as_in([
        sequences.Instance(data, [0, 1]),
        sequences.Instance(data, [1, 1]),
    ])
    self.assertEqual(
        [(t.source, t.destination, t.label)
         for t in transducer.transitions()], [(0, 1, 1), (1, 1, 1)])
    self.assertEqual(list(transducer.label_alphabet), [0, 1])

  def test_half_labels(self):
    data = sequences.FeatureVectorSequence([{}, {}, {}])
    transducer = transducers.Transducer(sequences.Alphabet(['a', 'b']))
    transducer.add_states_for_half_labels_connected_as_in(
        [sequences.Instance(data, [0, 1, 1])])
    self.assertEqual(list(transducer.weight_alphabet), ['b'])
    self.assertEqual(
        [(t.source, t.destination, t.weight_groups)
         for t in transducer.transitions()], [(0, 1, (0,)), (1, 1, (0,))])

  def test_three_quarter_labels(self):
    transducer = transducers.Transducer(sequences.Alphabet(['a', 'b']))
    transducer.add_fully_connected_states_for_three_quarter_labels()
    self.assertEqual(transducer.num_transitions(), 4)
    mask = dict(zip(transducer.weight_alphabet,
                    transducer.feature_mask().tolist()))
    self.assertEqual(mask, {'a': 1., 'b': 1., 'a->a': 0., 'a->b': 0.,
                            'b->a': 0., 'b->b': 0.})
    names = transducer.weight_alphabet.lookup_objects(
        transducer.transitions_from(1)[0].weight_groups)
    self.assertEqual(sorted(names), ['a', 'b->a'])

  def test_bi_labels(self):
    transducer = transducers.Transducer(sequences.Alphabet(['a', 'b']))
    transducer.add_fully_connected_states_for_bi_labels()
    self.assertEqual([s.name for s in transducer.states()],
                     ['a,a', 'a,b', 'b,a', 'b,b'])
    self.assertEqual(transducer.num_transitions(), 8)
    self.assertEqual(
        [(t.destination, t.label) for t in transducer.transitions_from(1)],
        [(2, 0), (3, 1)])
    start = transducer.add_start_state()
    self.assertEqual([t.label for t in transducer.transitions_from(start)],
                     [0, 1, 0, 1])
    self.assertEqual(transducer.num_labels(), 2)

  def test_bi_labels_connected_as_in(self):
    data = sequences.FeatureVectorSequence([{}, {}, {}])
    transducer = transducers.Transducer(sequences.Alphabet(['a', 'b']))
    transducer.add_states_for_bi_labels_connected_as_in(
        [sequences.Instance(data, [0, 1, 0])])
    self.assertEqual([s.name for s in transducer.states()], ['a,b', 'b,a'])
    self.assertEqual(
        [(t.source, t.destination, t.label)
         for t in transducer.transitions()], [(0, 1, 0), (1, 0, 1)])

  def test_tri_labels(self):
    transducer = transducers.Transducer(sequences.Alphabet(['a', 'b']))
    transducer.add_fully_connected_states_for_tri_labels()
    self.assertEqual(transducer.num_states(), 8)
    self.assertEqual(transducer.num_transitions(), 16)
    self.assertEqual(
        transducer.state(transducer.transitions_from(
            transducer.state_index('a,b,a'))[1].destination).name, 'b,a,b')

  def test_self_transitioning_state(self):
    transducer = transducers.Transducer(sequences.Alphabet(['x', 'y']))
    index = transducer.add_self_transitioning_state_for_all_labels('any')
    self.assertEqual(
        [(t.source, t.destination, t.label)
         for t in transducer.transitions()], [(index, index, 0),
                                              (index, index, 1)])


class OrderNStatesTest(absltest.TestCase):

  def test_order_zero(self):
    transducer = transducers.Transducer(sequences.Alphabet(['a', 'b']))
    self.assertIsNone(transducer.add_order_n_states([]))
    self.assertEqual(list(transducer.weight_alphabet), ['a', 'b'])
    npt.assert_array_equal(transducer.weight_incidence(),
                           [[1, 0], [0, 1], [1, 0], [0, 1]])

  def test_second_order_weight_groups(self):
    transducer = transducers.Transducer(sequences.Alphabet(['a', 'b']))
    transducer.add_order_n_states([], orders=[1, 2])
    self.assertEqual([s.name for s in transducer.states()],
                     ['a,a', 'a,b', 'b,a', 'b,b'])
    self.assertEqual(transducer.num_transitions(), 8)
    # Four bigram and eight trigram groups.
    self.assertEqual(transducer.num_weight_groups(), 12)
    first = transducer.transitions_from(transducer.state_index('a,b'))[0]
    self.assertEqual(transducer.state(first.destination).name, 'b,a')
    self.assertEqual(
        transducer.weight_alphabet.lookup_objects(first.weight_groups),
        ['b,a', 'a,b,a'])

  def test_forbidden(self):
    transducer = transducers.Transducer(sequences.Alphabet(['a', 'b']))
    transducer.add_order_n_states([], orders=[2], forbidden='b,b')
    self.assertEqual([s.name for s in transducer.states()],
                     ['a,a', 'a,b', 'b,a'])
    self.assertEqual(
        [t.label for t in transducer.transitions_from(1)], [0])
    self.assertEqual(transducer.num_transitions(), 5)

  def test_allowed(self):
    transducer = transducers.Transducer(sequences.Alphabet(['a', 'b']))
    transducer.add_order_n_states([], orders=[1],
                                  allowed=re.compile('a,.|.,a'))
    self.assertEqual(
        [(t.source, t.destination) for t in transducer.transitions()],
        [(0, 0), (0, 1), (1, 0)])

  def test_start_and_observed_connections(self):
    data = sequences.FeatureVectorSequence([{}, {}, {}])
    data2 = sequences.FeatureVectorSequence([{}, {}])
    transducer = transducers.Transducer(sequences.Alphabet(['O', 'B', 'I']))
    start = transducer.add_order_n_states(
        [sequences.Instance(data, [1, 2, 0]),
         sequences.Instance(data2, [0, 1])],
        orders=[1], start='<S>', forbidden='O,I', fully_connected=False)
    self.assertEqual(start, '<S>')
    self.assertEqual(list(transducer.label_alphabet), ['O', 'B', 'I', '<S>'])
    self.assertEqual(
        [(t.source, t.destination, t.label)
         for t in transducer.transitions()],
        [(0, 1, 1), (1, 2, 2), (2, 0, 0),
         (3, 0, 0), (3, 1, 1), (3, 2, 2), (3, 3, 3)])
    transducer.set_as_start_state(transducer.state_index(start))
    npt.assert_array_equal(transducer.initial_weights(), [-INF] * 3 + [0.])

  def test_second_order_start_state_name(self):
    transducer = transducers.Transducer(sequences.Alphabet(['a']))
    start = transducer.add_order_n_states([], orders=[2], start='<S>')
    self.assertEqual(start, '<S>,<S>')
    self.assertEqual(transducer.state(transducer.state_index(start)).name,
                     '<S>,<S>')

  def test_default_only_groups(self):
    transducer = transducers.Transducer(sequences.Alphabet(['a', 'b']))
    transducer.add_order_n_states([], orders=[0, 1], defaults=[False, True])
    mask = dict(zip(transducer.weight_alphabet,
                    transducer.feature_mask().tolist()))
    self.assertEqual(mask, {'a': 1., 'b': 1., 'a,a': 0., 'a,b': 0.,
                            'b,a': 0., 'b,b': 0.})

  def test_invalid(self):
    transducer = transducers.Transducer(sequences.Alphabet(['a', 'b']))
    with self.assertRaisesRegex(ValueError, 'increasing'):
      transducer.add_order_n_states([], orders=[1, 1])
    with self.assertRaisesRegex(ValueError, 'increasing'):
      transducer.add_order_n_states([], orders=[-1])
    with self.assertRaisesRegex(ValueError, 'match orders'):
      transducer.add_order_n_states([], orders=[0, 1], defaults=[True])
    self.assertEqual(transducer.num_states(), 0)

if __name__ == '__main__':
  absltest.main()
