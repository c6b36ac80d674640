# Error kinds raised by stm32map.
# Every failure is fatal for a build: nothing is retried and no partial output
# is considered valid.


class Stm32MapError(Exception):
    """Base class for errors raised by stm32map."""


class ParseError(Stm32MapError):
    """Raised when an SVD file can't be read or is malformed."""

    def __init__(self, source, explanation: str):
        super().__init__(f"Failed to parse {source}: {explanation}")
        self.source = source


class SvdLookupError(Stm32MapError, LookupError):
    """Raised when a peripheral, register or field doesn't exist in the model."""

    def __init__(self, kind: str, name: str, container: str):
        super().__init__(f"{container} does not contain a {kind} '{name}'")
        self.kind = kind
        self.name = name
        self.container = container


class UnsupportedVariantError(Stm32MapError, ValueError):
    """Raised when a variant key is not one of the supported MCUs."""

    def __init__(self, key):
        super().__init__(f"Unsupported MCU variant {key!r}")
        self.key = key


class ConfigError(Stm32MapError):
    """Raised when a configuration document is invalid."""


class PatchError(Stm32MapError):
    """Base class for patch operations whose preconditions don't hold."""


class DuplicatePeripheralError(PatchError):
    ...


class DuplicateRegisterError(PatchError):
    ...


class FieldOverlapError(PatchError):
    ...


class RegisterOverlapError(PatchError):
    ...


class StalePatchError(PatchError):
    """Raised when a patch wouldn't change anything: the vendor defect is gone."""


class PatchFailed(Stm32MapError):
    """A step of a patch program failed. Carries the step context."""

    def __init__(self, program: str, index: int, step, cause: Exception):
        super().__init__(f"{program}: step {index} ({step}) failed: {cause}")
        self.program = program
        self.index = index
        self.step = step
        self.cause = cause


class SchemaError(Stm32MapError):
    """Raised when an ownership schema is invalid or can't be expanded."""


class OwnershipConflictError(SchemaError):
    ...


class EmissionIOError(Stm32MapError, OSError):
    """Raised when an output artifact can't be written."""

    def __init__(self, path, cause: OSError):
        super().__init__(f"Can't write {path}: {cause}")
        self.path = path
        self.cause = cause


class TokenError(Stm32MapError):
    """Base class for misuse of ownership tokens."""


class OwnershipError(TokenError):
    ...


class TokenMovedError(TokenError):
    ...


class AccessError(TokenError):
    ...
