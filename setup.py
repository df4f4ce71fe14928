"""
Installs stanfamilies
"""

import re

from setuptools import find_packages, setup


# Get package information
def get_package_info():
    """
    Gets version information for the installation.
    """
    # Set up variables
    package_version = None

    # Open the file containing version info
    with open("stanfamilies/__init__.py", "r", encoding="utf-8") as file:
        for line in file:
            # Check version
            if match_obj := re.match(r"__version__.+([0-9]+\.[0-9]+\.[0-9]+)", line):
                package_version = match_obj.group(1)

    # Checks on variables
    if package_version is None:
        raise IOError("Could not find information on version.")

    return package_version


# Run setup
setup(
    name="stanfamilies",
    version=get_package_info(),
    description="Custom response families for Bayesian multilevel regression with Stan",
    python_requires=">=3.10",
    packages=find_packages(exclude=["tests", "tests.*"]),
    install_requires=[
        "arviz",
        "cmdstanpy",
        "formulae",
        "h5netcdf",
        "holoviews",
        "hvplot",
        "numpy",
        "pandas",
        "panel",
        "scipy",
        "tqdm",
        "typeguard",
        "xarray",
    ],
    extras_require={"test": ["pytest"]},
)
