import logging
from typing import Any, Callable, Dict, List, Optional, Protocol, Union, Awaitable

from schedule_engine.errors import RegistryFrozenError

logger = logging.getLogger(__name__)


class ActionHandler(Protocol):
    """
    Callable executed when a scheduled job for its action is processed.
    May be a plain function or a coroutine function.
    """

    def __call__(self, data: Dict[str, Any], entity_id: Optional[str],
                 actor_id: Optional[str]) -> Union[Any, Awaitable[Any]]:
        ...


class NamedAction(ActionHandler, Protocol):
    """
    A handler object that carries its own action name, e.g. a built-in action.
    """
    name: str


class ActionRegistry:
    """
    Lookup from action name to handler.

    Feature modules populate the registry while the application starts; the
    engine freezes it when it starts so the set of actions is fixed from then on.
    """
    def __init__(self, handlers: Optional[Dict[str, ActionHandler]] = None):
        self._handlers: Dict[str, ActionHandler] = {}
        self._frozen = False
        for name, handler in (handlers or {}).items():
            self.register(name, handler)

    @property
    def frozen(self) -> bool:
        return self._frozen

    @property
    def names(self) -> List[str]:
        return sorted(self._handlers)

    def register(self, action_name: str, handler: ActionHandler) -> None:
        """
        Register a handler for an action name. The last registration for a name wins.

        Args:
            action_name (str): Name used by schedules to reference the action.
            handler (ActionHandler): Callable invoked with ``(data, entity_id, actor_id)``.

        Raises:
            RegistryFrozenError: If the registry was frozen.
            ValueError: If the name is empty or the handler is not callable.
        """
        if self._frozen:
            raise RegistryFrozenError(f"Cannot register action '{action_name}': registry is frozen")
        if not action_name:
            raise ValueError("Action name must not be empty")
        if not callable(handler):
            raise ValueError(f"Handler for action '{action_name}' is not callable")
        if action_name in self._handlers:
            logger.warning("Action '%s' registered twice, the previous handler is replaced", action_name)
        self._handlers[action_name] = handler
        logger.debug("Registered action '%s'", action_name)

    def register_action(self, action: NamedAction) -> None:
        self.register(action.name, action)

    def action(self, action_name: str) -> Callable[[ActionHandler], ActionHandler]:
        """
        Decorator form of ``register``.
        """
        def decorator(handler: ActionHandler) -> ActionHandler:
            self.register(action_name, handler)
            return handler
        return decorator

    def unregister(self, action_name: str) -> bool:
        if self._frozen:
            raise RegistryFrozenError(f"Cannot unregister action '{action_name}': registry is frozen")
        return self._handlers.pop(action_name, None) is not None

    def get(self, action_name: str) -> Optional[ActionHandler]:
        return self._handlers.get(action_name)

    def freeze(self) -> None:
        if not self._frozen:
            self._frozen = True
            logger.info("Action registry frozen with %d action(s): %s", len(self._handlers), ", ".join(self.names))

    def __contains__(self, action_name: str) -> bool:
        return action_name in self._handlers

    def __len__(self) -> int:
        return len(self._handlers)
