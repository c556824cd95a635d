"""
This script configures the installation of the 'fargate-driver' Python package using setuptools.
Defines the package metadata, dependencies, and entry points for the command-line interface (CLI).
The CLI command 'fargate' is linked to the 'cli.main' function, which the CI job-runner's
custom executor calls for the config, prepare, run and cleanup stages of each job.

Run 'pip install -e .' to install the package in editable mode for development purposes.
"""

from setuptools import setup, find_packages

with open("README.md", "r", encoding="utf-8") as f:
    long_description = f.read()

setup(
    name="fargate-driver",
    version="0.1.0",
    description="Run CI jobs on dedicated AWS Fargate tasks through a custom executor",
    long_description = long_description,
    long_description_content_type="text/markdown",
    packages=find_packages(exclude=["tests", "tests.*"]),
    include_package_data=True,
    classifiers=[
        "Programming Language :: Python :: 3",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
    ],
    python_requires='>=3.8',
    install_requires=[
        'omegaconf',
        'click',
        'rich',
        'PyYAML',
        'boto3',
        'botocore',
        'asyncssh'
    ],
    extras_require={
        'test': ['pytest'],
    },
    entry_points={
        'console_scripts': ['fargate=fargate_driver.cli:main'],
    },
)
