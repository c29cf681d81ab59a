from loopkeeper.environments.base import (
    EnvironmentCommandError,
    EnvironmentProvisionError,
    EnvironmentSetupError,
    ExecutionEnvironment,
    ExecutionEnvironmentError,
)
from loopkeeper.environments.local import LocalEnvironment
from loopkeeper.environments.sprite import SpriteEnvironment

__all__ = [
    "EnvironmentCommandError",
    "EnvironmentProvisionError",
    "EnvironmentSetupError",
    "ExecutionEnvironment",
    "ExecutionEnvironmentError",
    "LocalEnvironment",
    "SpriteEnvironment",
]
