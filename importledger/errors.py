class ImportPipelineError(Exception):
    pass


class ParseError(ImportPipelineError):
    """The uploaded file is empty or cannot be read as delimited text."""


class MappingError(ImportPipelineError):
    pass


class MissingRequiredFieldError(MappingError):
    def __init__(self, fields: list[str]) -> None:
        self.fields = list(fields)
        super().__init__(f"required fields are not mapped: {', '.join(self.fields)}")


class StageError(ImportPipelineError):
    """An import session operation was called out of order."""


class CommitError(ImportPipelineError):
    pass


class CommitTimeoutError(CommitError):
    pass


class RecordNotFoundError(ImportPipelineError):
    pass


class InvalidTransitionError(ImportPipelineError):
    def __init__(self, current: str, target: str) -> None:
        self.current = current
        self.target = target
        super().__init__(f"cannot move reconciliation record from '{current}' to '{target}'")
