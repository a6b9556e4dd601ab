from __future__ import annotations


class BirthdayMessengerError(Exception):
    pass


class RecipientValidationError(BirthdayMessengerError, ValueError):
    def __init__(self, row_number: int, errors: list[str]) -> None:
        self.row_number = row_number
        self.errors = list(errors)
        super().__init__(f"Row {row_number} is invalid: {'; '.join(self.errors)}")


class ProviderConnectionError(BirthdayMessengerError):
    """An external collaborator is unreachable or rejected our credentials."""


class GenerationError(BirthdayMessengerError):
    pass


class DeliveryError(BirthdayMessengerError):
    pass


class StoreError(BirthdayMessengerError):
    pass


class DuplicateRecordError(StoreError):
    def __init__(self, recipient_id: str, year: int) -> None:
        self.recipient_id = recipient_id
        self.year = year
        super().__init__(f"Delivery already recorded for {recipient_id} in {year}")


class StartupValidationError(BirthdayMessengerError):
    pass
