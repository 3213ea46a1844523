"""
crnsens is a Python package for simulating biochemical reaction networks with mass-action
(or any other explicitly written) kinetics, together with the sensitivities and curvatures of
their trajectories with respect to kinetic parameters, initial-condition seeds and input
control parameters. These are the quantities needed for parameter fitting, identifiability
analysis and experimental design:

    - [Sensitivity analysis](https://en.wikipedia.org/wiki/Sensitivity_analysis)
    - [Chemical Reaction Network Theory Overview](https://en.wikipedia.org/wiki/Chemical_reaction_network_theory#Overview)

A network is described by a [`ReactionNetwork`][crnsens.network.ReactionNetwork], compiled once by
[`compile_model`][crnsens.derivatives.compile_model] into a symbolic model with compiled derivative
tensors, and simulated for any number of [`Experiment`][crnsens.simulate.Experiment]'s by
[`simulate`][crnsens.simulate.simulate].

Although crnsens has several submodules, you can import all public elements directly from crnsens,
e.g., ``from crnsens import ReactionNetwork, compile_model, simulate``.
"""

from crnsens.errors import *
from crnsens.expressions import *
from crnsens.network import *
from crnsens.compiler import *
from crnsens.derivatives import *
from crnsens.ode import *
from crnsens.results import *
from crnsens.simulate import *
from crnsens.__version__ import version as __version__
