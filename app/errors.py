# app/errors.py


class EngineError(Exception):
    """Errore generico del motore commissioni."""


class UpstreamLookupError(EngineError):
    """
    Un oggetto esterno referenziato non esiste piu' (o non e' leggibile)
    sulla piattaforma di pagamento. Il record viene saltato, il batch continua.
    """


class LegacySourceError(EngineError):
    """Errore HTTP / payload dal sistema affiliati legacy."""


class AliasLimitError(EngineError):
    """Affiliato con gia' il numero massimo di alias attivi."""
