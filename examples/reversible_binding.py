import numpy as np
import crnsens

def main():
    # reversible binding A + B <--> C, with sensitivities to kon and koff

    network = crnsens.ReactionNetwork(
        name='binding',
        compartments=[crnsens.Compartment('cell', 3, 1.0)],
        species=[
            crnsens.Species('A', 'cell', 2.0),
            crnsens.Species('B', 'cell', 1.0),
            crnsens.Species('C', 'cell', 0.0),
        ],
        parameters=[crnsens.Parameter('kon', 1.0), crnsens.Parameter('koff', 0.5)],
        reactions=[
            crnsens.Reaction('bind', [('A', 1), ('B', 1)], [('C', 1)], 'kon * A * B'),
            crnsens.Reaction('unbind', [('C', 1)], [('A', 1), ('B', 1)], 'koff * C'),
        ],
        outputs=[crnsens.Output('bound fraction', {'C': 1.0})],
    )
    model = crnsens.compile_model(network, order=1)
    print(model.species_table())

    experiment = crnsens.Experiment('binding', t_final=10.0)
    opts = crnsens.SimulationOptions(order=1)
    [sim] = crnsens.simulate(model, [experiment], opts)

    times = np.linspace(0, 10, 11)
    print(sim.to_dataset(times))
    print(f'dC/d(kon, koff) at t=10: {sim.dydT(10.0).ravel()}')


if __name__ == '__main__':
    main()
