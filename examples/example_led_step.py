import argparse
import json
import logging
from pathlib import Path

import numpy as np

from photogas_model.config import build_model_from_yaml, load_scenario_yaml
from photogas_model.transient import compute_derived_outputs, simulate

HERE = Path(__file__).resolve().parent


def main():
    parser = argparse.ArgumentParser(description="Run a transient of the photo-activated gas sensor.")
    parser.add_argument("--params", type=str, default=str(HERE / "params_default.yaml"), help="Path to params YAML")
    parser.add_argument("--scenario", type=str, default=str(HERE / "scenario_led_step.yaml"), help="Path to scenario YAML")
    parser.add_argument("--outdir", type=str, default="outputs", help="Output directory")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    outdir = Path(args.outdir)
    outdir.mkdir(parents=True, exist_ok=True)

    model = build_model_from_yaml(args.params)
    t_span, dt, stimulus = load_scenario_yaml(args.scenario)

    result = simulate(model, t_span, stimulus, dt)
    derived = compute_derived_outputs(result)

    # Save outputs
    names = list(result.signals)
    table = np.column_stack([result.t] + [result.signals[name] for name in names])
    np.savetxt(outdir / "run_signals.csv", table, delimiter=",", header=",".join(["t"] + names), comments="")
    np.save(outdir / "run_states.npy", result.Y)
    with (outdir / "run_derived.json").open("w", encoding="utf-8") as f:
        json.dump(derived, f, indent=2)

    print("Simulation finished.")
    print("Derived outputs:")
    print(json.dumps(derived, indent=2))


if __name__ == "__main__":
    main()
