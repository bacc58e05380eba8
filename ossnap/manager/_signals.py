# Copyright Red Hat
#
# ossnap/manager/_signals.py - OS snapshot pair manager signal handling
#
# This file is part of the ossnap project.
#
# SPDX-License-Identifier: Apache-2.0
"""
Helpers for deferring termination signals across critical sections.
"""
from signal import SIG_BLOCK, SIG_SETMASK, SIGINT, SIGTERM, pthread_sigmask
from functools import wraps
import logging

_log = logging.getLogger(__name__)
_log_debug = _log.debug

_to_block = {SIGINT, SIGTERM}


def suspend_signals(func):
    """
    Decorator to wrap functions that implement a critical section: SIGINT
    and SIGTERM are held until ``func`` returns or raises, then the
    previous signal mask is restored and pending signals are delivered.
    """

    @wraps(func)
    def wrapper(*args, **kwargs):
        _log_debug("Blocking termination signals for %s", func.__name__)
        old_mask = pthread_sigmask(SIG_BLOCK, _to_block)
        try:
            return func(*args, **kwargs)
        finally:
            _log_debug("Restoring signal mask after %s", func.__name__)
            pthread_sigmask(SIG_SETMASK, old_mask)

    return wrapper


__all__ = [
    "suspend_signals",
]
