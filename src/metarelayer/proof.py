import logging
from urllib.parse import quote

import httpx

import metarelayer.constants as C
from metarelayer.errors import ProofUnavailable

log = logging.getLogger("metarelayer.proof")


class ProofSource:
    """Fetch price proofs from the external proof API.

    The proof is opaque to us; it is passed through to the venue untouched.
    """

    def __init__(self, base_url: str, *, timeout: float = C.PROOF_TIMEOUT, http: httpx.AsyncClient | None = None) -> None:
        self.base_url = base_url
        self._owns_http = http is None
        self.http = http or httpx.AsyncClient(timeout=timeout)

    async def fetch_proof(self, asset_id: int | str) -> str:
        url = self.base_url + quote(str(asset_id), safe="")
        log.info("→ Fetching proof from: %s", url)
        try:
            r = await self.http.get(url)
        except httpx.HTTPError as e:
            raise ProofUnavailable(f"Proof API error: {type(e).__name__}: {e}") from e

        if r.is_error:
            raise ProofUnavailable(f"Proof API error: HTTP {r.status_code}", status=r.status_code)
        try:
            data = r.json()
        except ValueError as e:
            raise ProofUnavailable("Proof API error: response is not JSON", status=r.status_code) from e

        proof = data.get("proof") if isinstance(data, dict) else None
        if not proof:
            raise ProofUnavailable("Proof API error: 'proof' field missing in response", status=r.status_code)
        log.info("✓ Proof received (length=%s)", len(proof))
        return proof

    async def aclose(self) -> None:
        if self._owns_http:
            await self.http.aclose()
