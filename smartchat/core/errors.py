from __future__ import annotations


class SmartChatError(Exception):
    """Base error for smartchat."""


class ConfigurationError(SmartChatError):
    """The deployment is not provisioned correctly (schema, allow-list, budget)."""


class TokenBudgetError(ConfigurationError):
    """Prompt cannot fit the configured context window."""


class ValidationError(SmartChatError):
    """A generated query failed validation; never executed."""

    reason = "invalid"


class QuerySyntaxError(ValidationError):
    """Query text could not be parsed."""

    reason = "syntax"


class DisallowedTableError(ValidationError):
    """Query references a table outside the allow-list."""

    reason = "disallowed_table"

    def __init__(self, table: str) -> None:
        super().__init__(f"table not allowed: {table}")
        self.table = table


class MissingTenantScopeError(ValidationError):
    """Query is not provably restricted to the caller's tenants."""

    reason = "missing_tenant_scope"


class UnsafeOperationError(ValidationError):
    """Query is not a plain read (DDL/DML, locks, side-effecting functions)."""

    reason = "unsafe_operation"


class MultiStatementError(ValidationError):
    """More than one statement was supplied."""

    reason = "multi_statement"


class UnsupportedConstructError(ValidationError):
    """Query uses a construct the validator cannot reason about."""

    reason = "unsupported_construct"


class ProviderError(SmartChatError):
    """Model provider failure."""


class RateLimitedError(ProviderError):
    """Provider throttled the request."""


class ProviderTimeoutError(ProviderError):
    """Provider call timed out."""


class ProviderUnavailableError(ProviderError):
    """Provider returned a server-side failure."""


class ProviderAuthError(ProviderError):
    """Provider rejected our credentials."""


class MalformedResponseError(ProviderError):
    """Provider returned a body we could not interpret."""


class IntegrationUnavailableError(ProviderError):
    """Circuit breaker is open for the integration."""


class ExecutionError(SmartChatError):
    """Validated query failed at the database."""


class IntentError(SmartChatError):
    """Model output could not be read as a query intent."""



class ClassificationFallback(SmartChatError):
    """Message classified as non-data; answered with a canned reply."""

    def __init__(self, intent: str) -> None:
        super().__init__(intent)
        self.intent = intent
