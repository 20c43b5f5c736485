"""
Early Stopping Example
======================

An underpowered design stops as soon as the running power estimate is
clearly too low. Overrides keep the run going when the full estimate is
wanted anyway.
"""

import warnings

from crtpower import EarlyStopRules, MultiArmNormalDesign, SimulationConfig, run_power_simulation, simulate_datasets

design = MultiArmNormalDesign.balanced(2, 4, 10, [0.0, 0.2], 1.0, 0.2)

# 1. Default policy: checks start after 50 iterations
with warnings.catch_warnings(record=True) as caught:
    warnings.simplefilter("always")
    report = run_power_simulation(SimulationConfig(design=design, nsim=500, seed=1))

print(report.overview)
print("Termination:", report.termination.value, "after", report.n_evaluated, "iterations")
for w in caught:
    print("Warning:", w.message)

# 2. Stricter policy with a runtime ceiling enforced
rules = EarlyStopRules(min_iterations=30, min_power=0.8, time_check_iteration=10, time_limit_seconds=60.0)
config = SimulationConfig(design=design, nsim=500, seed=1, stop_rules=rules, time_limit_override=False)
with warnings.catch_warnings():
    warnings.simplefilter("ignore")
    strict = run_power_simulation(config)
print("Strict policy:", strict.termination.value, "after", strict.n_evaluated, "iterations")

# 3. Override the power check to get the full estimate
full = run_power_simulation(SimulationConfig(design=design, nsim=500, seed=1, low_power_override=True))
print(f"Full run: power {full.power:.3f} [{full.ci_lower:.3f}, {full.ci_upper:.3f}]")

# 4. Inspect the first simulated trial used by these runs
first = simulate_datasets(SimulationConfig(design=design, nsim=1, seed=1))[0]
print(first.groupby("trt")["y"].describe())
