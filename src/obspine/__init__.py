"""
Obs-spine - sensor observation store.

- obspine.core: errors, logging, settings, locks and the ORM layer
- obspine.om: observation model, merge engine, filters and ObservationStore
- obspine.cli: operator command line
"""

__version__ = "0.3.0"

from obspine.core import *  # noqa
from obspine.om import *  # noqa
