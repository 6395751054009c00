"""Domain errors raised by the fulfillment services.

Each error carries the HTTP status the API layer renders it with and a
stable machine-readable ``code`` so callers can branch without parsing
messages (e.g. redirect to the existing after-sale request on a conflict
instead of retrying).
"""


class FulfillmentError(Exception):
    status_code = 400
    code = 'FULFILLMENT_ERROR'

    def __init__(self, message, **details):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self):
        payload = {'error': self.message, 'code': self.code}
        payload.update(self.details)
        return payload


class ValidationError(FulfillmentError):
    status_code = 400
    code = 'VALIDATION_ERROR'


class NotFoundError(FulfillmentError):
    status_code = 404
    code = 'NOT_FOUND'


class InvalidStateError(FulfillmentError):
    status_code = 400
    code = 'INVALID_STATE'


class InvalidTransitionError(InvalidStateError):
    code = 'INVALID_TRANSITION'

    def __init__(self, entity, current, target, **details):
        current_value = getattr(current, 'value', current)
        target_value = getattr(target, 'value', target)
        super().__init__(
            f'{entity} cannot move from {current_value} to {target_value}',
            current_status=current_value,
            target_status=target_value,
            **details)


class ConflictError(FulfillmentError):
    status_code = 409
    code = 'CONFLICT'

    def __init__(self, message, existing_id=None, **details):
        super().__init__(message, existing_id=existing_id, **details)
        self.existing_id = existing_id


class InsufficientBalanceError(FulfillmentError):
    """A ledger debit or release that the seller's pools cannot cover.

    Only reachable after an earlier invariant breach, so it is never
    handled as a normal business outcome.
    """
    status_code = 500
    code = 'INSUFFICIENT_BALANCE'
