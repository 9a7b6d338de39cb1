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

"""lattice_crf API."""

from lattice_crf import confidence
from lattice_crf import constraints
from lattice_crf import crf
from lattice_crf import factors
from lattice_crf import lattices
from lattice_crf import optimizable
from lattice_crf import semirings
from lattice_crf import sequences
from lattice_crf import trainers
from lattice_crf import transducers
from lattice_crf import weight_fns
from lattice_crf.constraints import Constraint
from lattice_crf.crf import CRF
from lattice_crf.crf import MEMM
from lattice_crf.factors import Factors
from lattice_crf.lattices import MaxLattice
from lattice_crf.lattices import Path
from lattice_crf.lattices import SumLattice
from lattice_crf.optimizable import CRFOptimizableByLabelLikelihood
from lattice_crf.optimizable import TrainerConfig
from lattice_crf.sequences import Alphabet
from lattice_crf.sequences import FeatureVectorSequence
from lattice_crf.sequences import Instance
from lattice_crf.trainers import CRFTrainerByLikelihood
from lattice_crf.transducers import Transducer

__version__ = '0.1.0'
