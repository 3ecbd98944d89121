"""Failure taxonomy for booking, payment issuance and reconciliation."""


class BookingError(Exception):
    """Base class. ``status_code`` is the HTTP status used when surfaced."""

    status_code = 400

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail


class InvalidRequest(BookingError):
    status_code = 422


class SlotConflict(BookingError):
    status_code = 409


class ReservationNotFound(BookingError):
    status_code = 404

    def __init__(self, reservation_id: str):
        super().__init__(f"Reservation {reservation_id} not found.")
        self.reservation_id = reservation_id


class AlreadyFinalized(BookingError):
    """The reservation already left ``pending``. Expected on webhook replay."""

    status_code = 409

    def __init__(self, reservation_id: str, current_status: str):
        super().__init__(f"Reservation {reservation_id} is already {current_status}.")
        self.reservation_id = reservation_id
        self.current_status = current_status


class GatewayUnavailable(BookingError):
    """Outbound gateway call failed or timed out; safe to retry."""

    status_code = 502


class GatewayRejected(GatewayUnavailable):
    """The gateway answered with a client error; retrying the same call won't help."""

    def __init__(self, detail: str, status: int):
        super().__init__(detail)
        self.status = status


class MalformedNotification(BookingError):
    pass


class ReconciliationLookupFailed(BookingError):
    status_code = 503


class TimeBlockNotFound(BookingError):
    status_code = 404

    def __init__(self, block_id: str):
        super().__init__(f"Time block {block_id} not found.")
        self.block_id = block_id
