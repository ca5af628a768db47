"""
Exceptions raised by the LFQ pipeline.

Fatal conditions unwind the whole run; nothing is published to the
quantification sink once one of these has been raised.
"""


class LfqPipelineError(Exception):
    """Base class for every pipeline error."""


class ToolFailure(LfqPipelineError, RuntimeError):
    """An external TOPP tool could not be run to completion."""

    def __init__(self, tool: str, message: str):
        super().__init__(message)
        self.tool = tool


class ToolLaunchFailure(ToolFailure):
    """The process could not be started (missing executable, OS error, ...)."""


class ToolExitFailure(ToolFailure):
    def __init__(self, tool: str, exit_code: int):
        super().__init__(
            tool,
            f"The exit code of {tool} was {exit_code}. (The expected exit code is 0)",
        )
        self.exit_code = exit_code


class FileIOFailure(LfqPipelineError, OSError):
    """A parameter or data file could not be read, written or moved."""

    def __init__(self, path, message: str):
        super().__init__(f"{message}: {path}")
        self.path = str(path)


class InputContractViolation(LfqPipelineError, ValueError):
    """Bad user input: sample counts, option values, list syntax, tag order."""


class UnknownParameterError(InputContractViolation):
    """A parameter was written that the tool's default document does not declare."""

    def __init__(self, ini_path, parameter: str):
        super().__init__(f"Parameter '{parameter}' not found in {ini_path}")
        self.ini_path = str(ini_path)
        self.parameter = parameter


class DataJoinFailure(LfqPipelineError, RuntimeError):
    """A referenced feature, consensus element, sample or PSM id could not be found."""
