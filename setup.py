from setuptools import setup, find_packages

setup(
    name="MLMPower",
    version="0.1.0",
    packages=find_packages(exclude=["tests", "tests.*"]),
    python_requires=">=3.9",
    install_requires=[
        "numpy",
        "pandas",
        "scipy",
        "joblib",
    ],
    extras_require={
        "lme": ["statsmodels"],
        "progress": ["tqdm"],
        "test": ["pytest", "statsmodels", "tqdm"],
    },
    description="Monte Carlo Power Analysis for Crossed Mixed-Effects Designs",
)
