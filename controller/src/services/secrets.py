"""
Secret resolution and log masking.

Secrets are resolved by name from a provider at execution time and injected
only into a step's environment. Every value resolved for a run is registered
with that run's masker so it never reaches persisted logs verbatim.
"""

import logging
import os
import threading
from typing import Dict, Iterable, List, Mapping, Optional, Protocol, Tuple

from controller.src.errors import SecretNotFoundError

logger = logging.getLogger(__name__)

MASK_LENGTH = 3
# Mask characters, tried in order; the first one absent from every secret wins
MASK_CHARS = "*#~x"

class SecretProvider(Protocol):
    def resolve(self, name: str) -> Optional[str]:
        ...

class StaticSecretProvider:
    """Secrets from an in-memory mapping."""

    def __init__(self, secrets: Optional[Mapping[str, str]] = None):
        self._secrets = dict(secrets or {})

    def resolve(self, name: str) -> Optional[str]:
        return self._secrets.get(name)

class EnvSecretProvider:
    """Secrets from process environment variables, e.g. CONVEYOR_SECRET_NPM_TOKEN."""

    def __init__(self, prefix: str = "CONVEYOR_SECRET_", environ: Optional[Mapping[str, str]] = None):
        self.prefix = prefix
        self._environ = environ if environ is not None else os.environ

    def resolve(self, name: str) -> Optional[str]:
        return self._environ.get(f"{self.prefix}{name}")

class SecretMasker:
    """Replaces known secret values in text before it is stored."""

    def __init__(self, values: Iterable[str] = ()):
        self._values: List[str] = []
        self._lock = threading.Lock()
        for value in values:
            self.add(value)

    def add(self, value: str):
        if not value:
            return
        with self._lock:
            if value not in self._values:
                self._values.append(value)

    def __len__(self):
        return len(self._values)

    def _mask_char(self, values: List[str]) -> str:
        for char in MASK_CHARS:
            if not any(char in value for value in values):
                return char
        # Private use area: always finds a character outside every secret
        code = 0xE000
        while any(chr(code) in value for value in values):
            code += 1
        return chr(code)

    def mask(self, text: str) -> str:
        """
        Return `text` with every occurrence of every secret masked.

        Overlapping occurrences are merged into one span, and the mask is made
        of a character no secret contains, so the result cannot contain any
        secret as a substring.
        """
        if not text:
            return text
        with self._lock:
            values = list(self._values)
        if not values:
            return text

        spans: List[Tuple[int, int]] = []
        for value in values:
            start = text.find(value)
            while start != -1:
                spans.append((start, start + len(value)))
                start = text.find(value, start + 1)
        if not spans:
            return text

        spans.sort()
        merged = [spans[0]]
        for start, end in spans[1:]:
            last_start, last_end = merged[-1]
            if start <= last_end:
                merged[-1] = (last_start, max(last_end, end))
            else:
                merged.append((start, end))

        mask = self._mask_char(values) * MASK_LENGTH
        out = []
        cursor = 0
        for start, end in merged:
            out.append(text[cursor:start])
            out.append(mask)
            cursor = end
        out.append(text[cursor:])
        return "".join(out)

class SecretStore:
    """Resolves secrets for runs and keeps one masker per run."""

    def __init__(self, provider: SecretProvider):
        self.provider = provider
        self._maskers: Dict[str, SecretMasker] = {}
        self._lock = threading.Lock()

    def masker(self, run_id: str) -> SecretMasker:
        with self._lock:
            if run_id not in self._maskers:
                self._maskers[run_id] = SecretMasker()
            return self._maskers[run_id]

    def resolve(self, name: str, run_id: str) -> str:
        """Resolve a secret for a run. The value is never logged."""
        value = self.provider.resolve(name)
        if value is None:
            raise SecretNotFoundError(f"Secret '{name}' not found")
        self.masker(run_id).add(value)
        logger.debug(f"Resolved secret '{name}' for run {run_id}")
        return value

    def mask(self, run_id: str, text: str) -> str:
        return self.masker(run_id).mask(text)

    def forget_run(self, run_id: str):
        with self._lock:
            self._maskers.pop(run_id, None)

def mask(text: str, *secret_values: str) -> str:
    """Mask `secret_values` in `text`."""
    return SecretMasker(secret_values).mask(text)
