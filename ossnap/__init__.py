# Copyright Red Hat
#
# ossnap/__init__.py - OS snapshot pair manager package initialisation
#
# This file is part of the ossnap project.
#
# SPDX-License-Identifier: Apache-2.0
"""
Ossnap top-level package.
"""
from ._ossnap import *  # noqa: F401, F403
from ._ossnap import __all__  # noqa: F401

__version__ = "0.1.0"
