import threading


class FleetRecallError(Exception):
    pass


class ValidationError(FleetRecallError):
    pass


class ColumnNotFound(ValidationError):
    def __init__(self, column: str, available_columns: list[str]) -> None:
        self.column = column
        self.available_columns = list(available_columns)
        super().__init__(
            f"Column {column} not found in the file. Available columns: {', '.join(self.available_columns)}"
        )


class MissingColumn(ValidationError):
    def __init__(self, column: str, available_columns: list[str] | None = None) -> None:
        self.column = column
        self.available_columns = list(available_columns or [])
        super().__init__(f'No "{column}" column found in reference file')


class EmptyInput(ValidationError):
    pass


class SpreadsheetReadError(FleetRecallError):
    pass


class LookupFailure(FleetRecallError):
    pass


class LookupTimeout(LookupFailure):
    def __init__(self, message: str, worker: threading.Thread | None = None) -> None:
        super().__init__(message)
        # The abandoned call may still be running on this thread.
        self.worker = worker


class SessionRestartError(FleetRecallError):
    pass


class SessionLossError(FleetRecallError):
    pass
