# Copyright Red Hat
#
# ossnap/manager/plugins/__init__.py - Storage engine plugins
#
# This file is part of the ossnap project.
#
# SPDX-License-Identifier: Apache-2.0
"""
Storage engine plugin interface.
"""
from ._plugin import *  # noqa: F401, F403
from ._plugin import __all__  # noqa: F401
