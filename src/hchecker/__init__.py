__version__ = '0.3.0'

from hchecker.check import Check as Check
from hchecker.check import CheckExit as CheckExit
from hchecker.check import CheckHooks as CheckHooks
from hchecker.check import CheckState as CheckState
from hchecker.check import parse_notification as parse_notification
from hchecker.config import CheckerConfig as CheckerConfig
from hchecker.coordinator import Coordinator as Coordinator
from hchecker.dispatcher import Dispatcher as Dispatcher
from hchecker.probe import Prober as Prober
