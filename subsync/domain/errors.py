"""Error taxonomy shared by the billing services and the HTTP layer."""


class BillingError(Exception):
    """Base class for every billing synchronizer error."""


class SignatureInvalid(BillingError):
    """Webhook signature header is missing, malformed or does not match."""


class ReplayedTimestamp(BillingError):
    """Webhook timestamp falls outside the accepted tolerance window."""


class MalformedEvent(BillingError):
    """Webhook body is not a well-formed Stripe event envelope."""


class DuplicateEvent(BillingError):
    """Event was already applied. Used as a signal, never surfaced as a failure."""


class StaleTransition(BillingError):
    """A write lost the version check against a newer subscription state."""


class UnknownEventType(BillingError):
    """Event type has no transition handler; it is acknowledged and ignored."""


class StorageUnavailable(BillingError):
    """The database could not complete the operation. Safe to retry."""


class ProviderUnreachable(BillingError):
    """Stripe could not be reached or failed to answer."""


class ProviderRejected(BillingError):
    """Stripe refused the request (invalid customer, price, credentials)."""


class CustomerNotFound(BillingError):
    """No Stripe customer is registered for the user."""


class SubscriptionNotFound(BillingError):
    """The user has no live subscription to act upon."""


class DuplicateSubscription(BillingError):
    """A live subscription already exists for the customer."""


class TrialUnavailable(BillingError):
    """The user already consumed their trial."""


class ConfigurationError(BillingError):
    """A setting needed by the operation is missing."""


# Names used by the webhook verifier callers.
InvalidSignature = SignatureInvalid
StaleTimestamp = ReplayedTimestamp
