class MailRouterError(Exception):
    pass


class RejectedAddressError(MailRouterError):
    def __init__(self, address, reason):
        self.address = address
        self.reason = reason
        message = f"Address {address} rejected: {reason}"
        super().__init__(message)


class MissingKeyError(MailRouterError):
    def __init__(self, identity):
        self.identity = identity
        message = f"No encryption key registered for {identity}"
        super().__init__(message)


class IntegrityFailureError(MailRouterError):
    def __init__(self, detail):
        self.detail = detail
        message = f"Integrity failure: {detail}"
        super().__init__(message)


class InvalidKeyError(MailRouterError):
    def __init__(self, detail):
        self.detail = detail
        message = f"Invalid key: {detail}"
        super().__init__(message)


class UpgradeDeniedError(MailRouterError):
    def __init__(self, reason, detail=""):
        self.reason = reason
        self.detail = detail
        message = f"Upgrade denied: {reason}"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)


class DowngradeNotAllowedError(MailRouterError):
    def __init__(self, identity, current_tier, requested_tier):
        self.identity = identity
        self.current_tier = current_tier
        self.requested_tier = requested_tier
        message = f"Cannot move {identity} from {current_tier} down to {requested_tier}"
        super().__init__(message)


class InvalidTierError(MailRouterError):
    def __init__(self, tier):
        self.tier = tier
        message = f"Invalid tier {tier}"
        super().__init__(message)


class AuthRequiredError(MailRouterError):
    def __init__(self, action, detail="missing or invalid credentials"):
        self.action = action
        self.detail = detail
        message = f"Action {action} requires authentication: {detail}"
        super().__init__(message)


class BestEffortFailure(MailRouterError):
    def __init__(self, operation, detail):
        self.operation = operation
        self.detail = detail
        message = f"Best-effort {operation} failed: {detail}"
        super().__init__(message)


class StoreUnavailableError(MailRouterError):
    def __init__(self, operation):
        self.operation = operation
        message = f"Store unavailable during {operation}"
        super().__init__(message)


class EnvelopeNotFoundError(MailRouterError):
    def __init__(self, identity, message_id):
        self.identity = identity
        self.message_id = message_id
        message = f"Message {message_id} not found for {identity}"
        super().__init__(message)


class IdentityTakenError(MailRouterError):
    def __init__(self, identity):
        self.identity = identity
        message = f"Identity {identity} already registered"
        super().__init__(message)


class IdentityNotFoundError(MailRouterError):
    def __init__(self, identity):
        self.identity = identity
        message = f"Identity {identity} not registered"
        super().__init__(message)


class PrivacyLockedError(MailRouterError):
    def __init__(self, identity, state):
        self.identity = identity
        self.state = state
        message = f"Privacy for {identity} is locked in {state}"
        super().__init__(message)


class InvalidPrivacyStateError(MailRouterError):
    def __init__(self, state):
        self.state = state
        message = f"Invalid privacy state {state}"
        super().__init__(message)


class CapabilityDeniedError(MailRouterError):
    def __init__(self, identity, capability):
        self.identity = identity
        self.capability = capability
        message = f"Identity {identity} lacks capability {capability}"
        super().__init__(message)


class RateLimitedError(MailRouterError):
    def __init__(self, scope, key, limit):
        self.scope = scope
        self.key = key
        self.limit = limit
        message = f"Rate limit {limit} exceeded for {scope}/{key}"
        super().__init__(message)


class UnknownActionError(MailRouterError):
    def __init__(self, action):
        self.action = action
        message = f"Unknown action {action}"
        super().__init__(message)


class AlreadyMoltedError(MailRouterError):
    def __init__(self, identity):
        self.identity = identity
        message = f"Identity {identity} is already private"
        super().__init__(message)


class ChainOracleError(MailRouterError):
    def __init__(self, method, detail):
        self.method = method
        self.detail = detail
        message = f"Chain_error  = {method}: {detail}"
        super().__init__(message)


class ProviderError(MailRouterError):
    def __init__(self, operation, detail):
        self.operation = operation
        self.detail = detail
        message = f"Provider_error  = {operation}: {detail}"
        super().__init__(message)


class PaymentAlreadyUsedError(MailRouterError):
    def __init__(self, tx_hash):
        self.tx_hash = tx_hash
        message = f"Payment {tx_hash} already used"
        super().__init__(message)


class InvalidEventError(MailRouterError):
    def __init__(self, detail):
        self.detail = detail
        message = f"Invalid calendar event: {detail}"
        super().__init__(message)
