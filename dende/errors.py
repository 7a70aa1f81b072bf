class DendeError(Exception):
    pass


class ConfigError(DendeError):
    """Invalid or contradictory job descriptor. Fatal before any job starts."""


class JobInitError(DendeError):
    """A single job could not start (missing target, failed subscription)."""


class TailReadError(DendeError):
    pass


class TransientLookupError(DendeError):
    pass


class DeliveryError(DendeError):
    pass
