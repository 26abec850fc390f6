import httpx
from oae.core.errors import AdapterRejected, AdapterUnavailable


async def send(client: httpx.AsyncClient, name: str, method: str, url: str, **kwargs) -> httpx.Response:
    """Issue one request, translating transport failures into adapter errors.

    404 is handed back to the caller; 429 and 5xx are transient, any other
    4xx is a rejection.
    """
    try:
        resp = await client.request(method, url, **kwargs)
    except httpx.TimeoutException as e:
        raise AdapterUnavailable(f"{name}: timeout") from e
    except httpx.TransportError as e:
        raise AdapterUnavailable(f"{name}: {e.__class__.__name__}") from e

    if resp.status_code == 404:
        return resp
    if resp.status_code == 429 or resp.status_code >= 500:
        raise AdapterUnavailable(f"{name}: HTTP {resp.status_code}")
    if resp.status_code >= 400:
        raise AdapterRejected(f"{name}: HTTP {resp.status_code} {resp.text[:200]}")
    return resp
