from setuptools import setup, find_packages

setup(
    name="house-screen-reconciler",
    version="0.1.0",
    description="Keeps house player screens provisioned and powered on against the provisioning backend",
    packages=find_packages(include=["src", "src.*"]),
    python_requires=">=3.8",
    install_requires=[
        "PyYAML>=6.0",
        "pyzmq>=25.0",
        "requests>=2.31.0",
    ],
    extras_require={
        "dev": [
            "pytest>=7.4.0",
            "black>=23.0.0",
            "pylint>=2.17.0",
        ]
    },
    entry_points={
        "console_scripts": [
            "house-screen-reconciler=src.reconciler.service:main",
        ]
    },
)
