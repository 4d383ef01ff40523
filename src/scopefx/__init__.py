"""scopefx: reactive scope trees with deferred, batched change notification."""

from importlib.metadata import version as _version

__version__ = _version("scopefx")

from scopefx.errors import ExpressionError, RegistryError, ScopeError, UpdateLoopError
from scopefx.events import ScopeEvent
from scopefx.model import Model, ModelList, is_model
from scopefx.parse import Accessor, SyntaxKind, compile_expression
from scopefx.runtime import Runtime
from scopefx.scheduler import Scheduler
from scopefx.scope import Listener, Scope, same_value
# textual NOT auto-imported, opt-in only

__all__ = [
    "Runtime",
    "Scope",
    "Listener",
    "Model",
    "ModelList",
    "is_model",
    "same_value",
    "compile_expression",
    "Accessor",
    "SyntaxKind",
    "Scheduler",
    "ScopeEvent",
    "ScopeError",
    "ExpressionError",
    "RegistryError",
    "UpdateLoopError",
]
