"""Exceptions raised by loop triggers and the run executor"""


class LoopError(Exception):
    """Base error for the loop automation subsystem"""


class LoopConfigError(LoopError):
    """Loop configuration is missing or malformed"""


class CronError(LoopConfigError):
    """Cron expression could not be parsed"""


class WatchPathError(LoopConfigError):
    """File trigger watch path is missing, invalid, or outside the workspace"""


class ApiPollError(LoopError):
    """HTTP polling attempt failed (network, timeout, or bad JSON)"""


class AgentRunError(LoopError):
    """Agent execution failed for a loop run"""
