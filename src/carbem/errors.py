class CarbemError(Exception):
    """
    base class for every error raised by carbem.
    """


class InvalidConfig(CarbemError):
    pass


class MissingCredential(InvalidConfig):
    pass


class InvalidQuery(CarbemError):
    pass


class UnsupportedProvider(CarbemError):
    def __init__(self, provider: "str") -> "None":
        super().__init__(f"unsupported provider: {provider!r}")
        self.provider = provider


class ProviderNotConfigured(CarbemError):
    def __init__(self, provider: "str") -> "None":
        super().__init__(f"provider not configured: {provider!r}")
        self.provider = provider


class AuthenticationError(CarbemError):
    pass


class UnsupportedFilter(CarbemError):
    """
    raised by submit when the query carries a filter the provider
    cannot express in its native request. The caller is expected
    to submit the unfiltered query and filter the records itself.
    """

    def __init__(self, provider: "str", filters: "frozenset[str]") -> "None":
        super().__init__(
            f"{provider} cannot filter by {', '.join(sorted(filters))} server-side"
        )
        self.provider = provider
        self.filters = filters


class JobNotReady(CarbemError):
    pass


class PollTimeout(CarbemError):
    pass


class MalformedReport(CarbemError):
    pass


class TransientNetworkError(CarbemError):
    pass


class ProviderError(CarbemError):
    """
    the provider answered with something carbem cannot interpret.
    """


class ReportJobFailed(CarbemError):
    pass


class JobCancelled(CarbemError):
    pass
