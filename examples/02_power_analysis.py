"""
Power Analysis Example
======================

This example estimates the power to detect a group difference in a
crossed design, then compares a few design sizes.
"""

import mlmpower

print("=" * 60)
print("POWER ANALYSIS EXAMPLE")
print("=" * 60)

# 1. Configure the design and the simulation
model = mlmpower.MLMPower(
    {
        "subject_count": 50,
        "trial_count": 25,
        "fixed_group_effect": 0.10,
        "subject_sd": 0.5,
        "trial_sd": 0.5,
        "residual_sd": 0.10,
    }
)
model.set_repetitions(200).set_alpha(0.05).set_seed(2137)

# 2. Full report
model.find_power(summary="long")

# 3. How many subjects are enough?
print("\n" + "=" * 60)
print("SUBJECT COUNT COMPARISON")
print("=" * 60)

for subjects in (30, 60, 90):
    summary = mlmpower.run_power_simulation(
        200,
        {**model.params.to_dict(), "subject_count": subjects},
        0.05,
        seed=2137,
        progress_callback=False,
    )
    low, high = summary.power_interval
    print(f"{subjects:>4} subjects: power {summary.power:6.1%}  [{low:.1%}, {high:.1%}]")

# 4. Raw repetitions for custom analysis
summary = model.find_power(print_results=False, return_results=True)
print("\nStatus counts:")
print(summary.repetitions["status"].value_counts())

# Tips:
# - set_parallel(True) spreads repetitions over joblib worker processes
# - set_singular_policy("exclude") drops fits where a variance collapses to zero
# - pass progress_callback=mlmpower.TqdmReporter() for a tqdm bar
