class HolderIndexError(Exception):
    pass


class ConfigurationError(HolderIndexError):
    """Collection is unknown, disabled or missing an address / tier table."""


class ChainReadError(HolderIndexError):
    """An upstream call still failed after the retry budget was spent."""


class RateLimitedError(ChainReadError):
    pass


class LogRangeTooLargeError(HolderIndexError):
    """The provider refused a log query because the response would be too big.

    `suggested` is the (from_block, to_block) range the provider said would
    work, or None when the error message did not carry one.
    """

    def __init__(self, message, suggested=None):
        super().__init__(message)
        self.suggested = suggested


class UnknownCollectionError(ConfigurationError):
    pass


class LeaseLostError(HolderIndexError):
    """The population lease expired or was taken over mid-run."""


class InvalidRequestError(HolderIndexError):
    pass


class TransactionNotFoundError(HolderIndexError):
    pass
