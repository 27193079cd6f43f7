"""CNC Sender - GRBL streaming core.

Line-by-line G-code streaming with confirmed replies, central status
polling, motion completion detection and pause/stop/resume.
"""

__version__ = "0.1.0"
__author__ = "Bob Kolbasowski"

from .confirmation import CommandConfirmationChannel, CommandResult
from .controller import MachineContext
from .execution import ExecutionCursor, ExecutionStateMachine, LineFlags
from .gcode_parser import GCodeSegment, SegmentParser
from .grbl_settings import GrblSettingsCache
from .machine_status import MachineStatus, StatusSnapshot
from .motion import MotionCompleteDetector, MotionWaitResult
from .status_poller import CentralStatusPoller
from .transport import SerialTransport
from .utils import Settings, setup_logging

__all__ = [
    "CentralStatusPoller",
    "CommandConfirmationChannel",
    "CommandResult",
    "ExecutionCursor",
    "ExecutionStateMachine",
    "GCodeSegment",
    "GrblSettingsCache",
    "LineFlags",
    "MachineContext",
    "MachineStatus",
    "MotionCompleteDetector",
    "MotionWaitResult",
    "SegmentParser",
    "SerialTransport",
    "Settings",
    "StatusSnapshot",
    "setup_logging",
]
