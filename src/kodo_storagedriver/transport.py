"""Per-request logging for the boto3 and httpx clients."""

import logging
import time


logger = logging.getLogger(__name__)


def _request_id(start):
    return format(int(start * 1e9), "x")


def install_request_logging(client):
    """Log begin/end of every call made by a botocore client."""
    events = client.meta.events

    def before_call(params, context, model, **kwargs):
        start = time.monotonic()
        context["kodo_start"] = start
        logger.info(
            "[REQ_BEG][%s] %s %s",
            _request_id(start),
            model.name,
            params.get("url_path"),
        )

    def after_call(http_response, parsed, context, model, **kwargs):
        start = context.get("kodo_start")
        if start is None:
            return
        headers = getattr(http_response, "headers", {}) or {}
        extra = ""
        reqid = headers.get("X-Reqid") or headers.get("x-amz-request-id")
        if reqid:
            extra += f", RespReqId: {reqid}"
        xlog = headers.get("X-Log")
        if xlog:
            extra += f", Xlog: {xlog}"
        error = (parsed or {}).get("Error")
        if error:
            extra += f", Err: {error.get('Code')}"
        logger.info(
            "[REQ_END][%s] %s, Code: %s%s, Time: %dms",
            _request_id(start),
            model.name,
            getattr(http_response, "status_code", 0),
            extra,
            (time.monotonic() - start) * 1000,
        )

    events.register("before-call.s3", before_call)
    events.register("after-call.s3", after_call)
    return client


def _log_request(request):
    start = time.monotonic()
    request.extensions["kodo_start"] = start
    logger.info("[REQ_BEG][%s] %s %s", _request_id(start), request.method, request.url)


def _log_response(response):
    request = response.request
    start = request.extensions.get("kodo_start", time.monotonic())
    extra = ""
    reqid = response.headers.get("X-Reqid")
    if reqid:
        extra += f", RespReqId: {reqid}"
    logger.info(
        "[REQ_END][%s] %s %s, Code: %d%s, Time: %dms",
        _request_id(start),
        request.method,
        request.url,
        response.status_code,
        extra,
        (time.monotonic() - start) * 1000,
    )


def httpx_event_hooks():
    """``event_hooks`` mapping for an httpx.Client."""
    return {"request": [_log_request], "response": [_log_response]}
