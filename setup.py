from setuptools import setup, find_packages

setup(
    name="nano-oasis",
    version="0.1.0",
    description="Nano-Oasis: an action-conditioned spatio-temporal DiT with autoregressive DDIM sampling",
    author="Research Engineer",
    python_requires=">=3.8",
    packages=find_packages(exclude=["tests"]),
    install_requires=[
        "numpy<2.0.0",
        "torch>=2.1.0",
        "pyyaml",
        "tqdm",
        "matplotlib",
        "pillow",
    ],
    extras_require={
        "dev": ["pytest", "pytest-cov"],
    },
    entry_points={
        "console_scripts": [
            "nano-oasis-generate=scripts.generate:main",
        ],
    },
)
