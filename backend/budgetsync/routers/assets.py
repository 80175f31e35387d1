import httpx
from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import Response

from budgetsync.routers.sync import get_services
from budgetsync.services.asset_cache import AssetUnavailable

router = APIRouter()

_FORWARDED_REQUEST_HEADERS = ("accept", "accept-language", "content-type", "authorization", "cookie", "user-agent")
_DROPPED_RESPONSE_HEADERS = frozenset(
    {"content-encoding", "content-length", "transfer-encoding", "connection", "keep-alive"}
)


@router.api_route("/{path:path}", methods=["GET", "POST", "PUT", "PATCH", "DELETE"])
async def proxy_asset(path: str, req: Request):
    services = get_services(req)
    headers = {name: req.headers[name] for name in _FORWARDED_REQUEST_HEADERS if name in req.headers}
    body = await req.body() if req.method != "GET" else None
    upstream = services.origin.build_request(
        req.method,
        "/" + path,
        params=list(req.query_params.multi_items()) or None,
        headers=headers,
        content=body,
    )
    try:
        response = await services.assets.fetch(upstream)
    except AssetUnavailable:
        raise HTTPException(status_code=504, detail="Offline and not cached")
    except httpx.HTTPError:
        raise HTTPException(status_code=502, detail="Upstream unreachable")

    out_headers = {
        name: value for name, value in response.headers.items() if name.lower() not in _DROPPED_RESPONSE_HEADERS
    }
    return Response(content=response.content, status_code=response.status_code, headers=out_headers)
