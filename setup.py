import os
import sys

try:
    from setuptools import setup
except ImportError:
    from distutils.core import setup

# Don't import the flagcore module here, since deps may not be installed
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "flagcore"))
from version import VERSION  # noqa: E402

long_description = """
flagcore evaluates feature flags locally, against flag definitions polled
from the flags API, so most flag checks never leave the process.

This package requires Python 3.9 or higher.
"""

# Minimal setup.py for backward compatibility
# Most configuration is now in pyproject.toml
setup(
    name="flagcore",
    version=VERSION,
    # Basic fields for backward compatibility
    license="MIT License",
    description="Local feature flag evaluation for Python applications.",
    long_description=long_description,
    # This will fallback to pyproject.toml for detailed configuration
)
