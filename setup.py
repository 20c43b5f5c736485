from setuptools import setup, find_packages

setup(
    name="CRTPower",
    version="0.1.0",
    packages=find_packages(include=["crtpower", "crtpower.*"]),
    python_requires=">=3.9",
    install_requires=[
        "numpy",
        "pandas",
        "scipy",
        "statsmodels>=0.13",
        "joblib>=1.3",
    ],
    extras_require={
        "progress": ["tqdm"],
        "test": ["pytest", "tqdm"],
    },
    description="Monte Carlo Power Analysis for Cluster-Randomized Trials",
)
