# Copyright Red Hat
#
# ossnap/manager/__init__.py - OS snapshot pair manager
#
# This file is part of the ossnap project.
#
# SPDX-License-Identifier: Apache-2.0
"""
Top level interface to the snapshot pair manager.
"""

from ._manager import Manager, OssnapConfig, PairInfo  # noqa: F401, F403
from ._switch import SwitchState, HookResult

__all__ = [
    "Manager",
    "OssnapConfig",
    "PairInfo",
    "SwitchState",
    "HookResult",
]
