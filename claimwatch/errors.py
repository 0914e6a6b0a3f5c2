"""Error taxonomy for the detection pipeline."""


class ClaimwatchError(Exception):
    """Base class for all pipeline errors."""


class SchemaError(ClaimwatchError):
    """Required columns are absent from a dataset."""

    def __init__(self, dataset: str, missing: list[str]):
        self.dataset = dataset
        self.missing = list(missing)
        super().__init__(f"{dataset}: missing required columns {', '.join(self.missing)}")


class MissingDatasetError(SchemaError):
    """A required dataset is entirely absent from the snapshot."""

    def __init__(self, dataset: str):
        super().__init__(dataset, [])
        self.args = (f"required dataset '{dataset}' was not provided",)


class ParseError(ClaimwatchError):
    """A cell could not be coerced to its declared type."""

    def __init__(self, column: str, value: str, expected: str):
        self.column = column
        self.value = value
        self.expected = expected
        super().__init__(f"{column}={value!r} is not a valid {expected}")


class ConfigError(ClaimwatchError, ValueError):
    """A detection threshold is outside its valid range."""


class CohortTooSmallWarning(UserWarning):
    """A cohort has too few members for robust statistics."""
