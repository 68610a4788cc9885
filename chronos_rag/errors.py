"""
Error taxonomy for the retrieval core.

Only two conditions escape the core as exceptions:

  StoreUnavailable -- the vector datastore could not be queried.  Search
                      cannot produce an answer without it, so callers get
                      the exception and translate it into a retry-later
                      message.
  InvalidQuery     -- the request itself is malformed (blank query,
                      non-positive limit, wrong embedding dimensionality).
                      Raised before any I/O and never retried.

Cache and ranking-signal failures never surface here; they are absorbed
and logged by the component that owns them.  Empty results are values,
not errors.

SessionNotFound belongs to the session ledger, outside the search path.
"""
from __future__ import annotations


class RAGError(Exception):
    """Base class for all errors raised by chronos_rag."""


class StoreUnavailable(RAGError):
    """The vector datastore is unreachable or failed mid-query."""


class InvalidQuery(RAGError, ValueError):
    """The search request was rejected before reaching the datastore."""


class SessionNotFound(RAGError, KeyError):
    """A chat session id is not present in the ledger."""
