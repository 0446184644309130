"""Core package containing the managers and the matrix orchestrator."""

from relmatrix.core.base import RelmatrixManager
from relmatrix.core.config_manager import ConfigManager, ConfigSchema
from relmatrix.core.logging_manager import LoggingManager
from relmatrix.core.orchestrator import CellResult, CellRunner, CellStatus, MatrixRunner, RunReport
