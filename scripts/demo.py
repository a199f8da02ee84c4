from decimal import Decimal
from pathlib import Path
import sys

# Make src modules discoverable
sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))

import sim  # type: ignore
from register import load_catalog  # type: ignore
from config import load_config  # type: ignore

import matplotlib.pyplot as plt

ROOT = Path(__file__).resolve().parents[1]


def setup_simulation(seed: int = 42) -> sim.Simulation:
    """Bread village from the bundled content, with a second bakery pushed in by hand."""
    config = load_config(ROOT / "content" / "SimConfig.json").model_copy(update={"seed": seed})
    catalog = load_catalog([ROOT / "content"], time_good_id=config.time_good_id)
    simulation = sim.Simulation(catalog, config)
    sim.populate(simulation, sim.load_scenario(ROOT / "scenarios" / "bread_village.json"))

    simulation.add_firm("rye_mill", "millbrook", ["mill_flour", "bake_bread"], goods={"wheat": 6})
    for i in range(6):
        simulation.add_pop(f"villager_{i}", "millbrook", "human", "villager", cash=Decimal(60 + 10 * i))
    return simulation


def run_simulation(turns: int = 40, seed: int = 42) -> None:
    """Run the village with live plots of AMV and pop satisfaction."""
    simulation = setup_simulation(seed)
    goods = ["bread", "firewood", "wheat", "wedding_ring"]

    # ---------------------------------------------------------------------
    # AMV plot (figure 1)
    # ---------------------------------------------------------------------
    plt.ion()

    fig_prices, ax_prices = plt.subplots()
    price_lines = {}
    for gid in goods:
        (line,) = ax_prices.plot([], [], label=gid)
        price_lines[gid] = line
    ax_prices.set_xlabel("Turn")
    ax_prices.set_ylabel("AMV")
    ax_prices.set_title("Millbrook AMV")
    ax_prices.legend()

    # ---------------------------------------------------------------------
    # Satisfaction + treasury plot (figure 2)
    # ---------------------------------------------------------------------
    fig_pops, ax_pops = plt.subplots()
    (line_steps,) = ax_pops.plot([], [], label="avg_satisfaction_steps")
    (line_treasury,) = ax_pops.plot([], [], label="treasury")
    steps_history: list = []
    treasury_history: list = []
    ax_pops.set_xlabel("Turn")
    ax_pops.set_ylabel("Value")
    ax_pops.set_title("Satisfaction & Levies Collected")
    ax_pops.legend()

    for t in range(1, turns + 1):
        # wheat arrives from the fields every few turns
        if t % 3 == 0:
            simulation.inject("millbrook", "bakery", "wheat", 6)

        report = simulation.step()

        for gid in goods:
            history = [float(v) for v in simulation.amv_history("millbrook", gid)]
            price_lines[gid].set_data(range(1, len(history) + 1), history)

        steps = [s.steps for s in report.satisfaction.values()]
        steps_history.append(sum(steps) / len(steps) if steps else 0.0)
        line_steps.set_data(range(1, t + 1), steps_history)
        treasury_history.append(float(simulation.world.locality("millbrook").treasury))
        line_treasury.set_data(range(1, t + 1), treasury_history)

        print(report.summary())

        ax_prices.relim()
        ax_prices.autoscale_view()
        ax_pops.relim()
        ax_pops.autoscale_view()

        plt.pause(0.001)

    plt.ioff()
    plt.show()


if __name__ == "__main__":
    run_simulation()
