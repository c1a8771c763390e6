from abc import ABC, abstractmethod
from threading import Lock

from crumbtrail.utils import logger

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from typing import Dict, Iterable, Iterator, Optional, Set, Type, TypeVar

    from crumbtrail.client import Client
    from crumbtrail.scope import Scope

    I = TypeVar("I", bound="Integration")


_installer_lock = Lock()

# Set of all integration identifiers we have attempted to install
_processed_integrations: "Set[str]" = set()

# Set of all integration identifiers we have actually installed
_installed_integrations: "Set[str]" = set()


_DEFAULT_INTEGRATIONS = [
    "crumbtrail.integrations.cache.CacheIntegration",
    "crumbtrail.integrations.dispatch.DispatchIntegration",
    "crumbtrail.integrations.logging.LoggingIntegration",
]


def iter_default_integrations() -> "Iterator[Type[Integration]]":
    """Returns an iterator of the default integration classes."""
    from importlib import import_module

    for import_string in _DEFAULT_INTEGRATIONS:
        try:
            module, cls = import_string.rsplit(".", 1)
            yield getattr(import_module(module), cls)
        except (DidNotEnable, SyntaxError) as e:
            logger.debug("Did not import default integration %s: %s", import_string, e)


def setup_integrations(
    integrations: "Optional[Iterable[Integration]]", with_defaults: bool = True
) -> "Dict[str, Integration]":
    """
    Given a list of integration instances, this installs them all.

    When `with_defaults` is set to `True` all default integrations are added
    unless they were already provided before.
    """
    integrations = {
        integration.identifier: integration for integration in integrations or ()
    }

    logger.debug("Setting up integrations (with default = %s)", with_defaults)

    # Integrations that are not explicitly set up by the user.
    used_as_default_integration = set()

    if with_defaults:
        for integration_cls in iter_default_integrations():
            if integration_cls.identifier not in integrations:
                instance = integration_cls()
                integrations[instance.identifier] = instance
                used_as_default_integration.add(instance.identifier)

    for identifier, integration in integrations.items():
        with _installer_lock:
            if identifier not in _processed_integrations:
                logger.debug(
                    "Setting up previously not enabled integration %s", identifier
                )
                try:
                    type(integration).setup_once()
                except DidNotEnable as e:
                    if identifier not in used_as_default_integration:
                        raise

                    logger.debug(
                        "Did not enable default integration %s: %s", identifier, e
                    )
                else:
                    _installed_integrations.add(identifier)

                _processed_integrations.add(identifier)

    integrations = {
        identifier: integration
        for identifier, integration in integrations.items()
        if identifier in _installed_integrations
    }

    for identifier in integrations:
        logger.debug("Enabling integration %s", identifier)

    return integrations


def get_enabled(
    integration_cls: "Type[I]",
) -> "tuple[Optional[I], Optional[Scope], Optional[Client]]":
    """
    Looks up the instance of ``integration_cls`` enabled on the client of
    the active scope.

    Hooks use this to decide whether they record anything. The instance is
    ``None`` when there is no active scope or the client did not enable the
    integration.
    """
    from crumbtrail.api import get_client
    from crumbtrail.scope import get_active_scope

    scope = get_active_scope()
    client = scope.client if scope is not None and scope.client is not None else get_client()
    if scope is None or client is None:
        return None, scope, client
    return client.get_integration(integration_cls), scope, client


class DidNotEnable(Exception):  # noqa: N818
    """
    The integration could not be enabled due to a trivial user error like
    `sqlalchemy` not being installed for the `SqlalchemyIntegration`.

    This exception is silently swallowed for default integrations, but reraised
    for explicitly enabled integrations.
    """


class Integration(ABC):
    """Baseclass for all integrations.

    To accept options for an integration, implement your own constructor that
    saves those options on `self`.
    """

    identifier: str = None  # type: ignore
    """String unique ID of integration type"""

    @staticmethod
    @abstractmethod
    def setup_once() -> None:
        """
        Initialize the integration.

        This function is only called once, ever. Configuration is not available
        at this point, so the only thing to do here is to register the hooks.

        Inside those hooks :py:func:`get_enabled` is used to access the
        instance of the active client again.
        """
        pass
