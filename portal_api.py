#!/usr/bin/env python3
"""
Stalker portal control API

GET /api/stalker?action=handshake|get_profile|get_channels|create_link&mac=..&url=..[&token=..][&cmd=..]
GET /api/proxy?url=..
"""

import logging
import os

import requests
from flask import Flask, Response, jsonify, request

from stalker import (
    HandshakeExhausted,
    HandshakeProber,
    LinkResolutionFailed,
    MissingToken,
    PortalClient,
    PortalSession,
    StalkerPortalError,
    StreamUnavailable,
    UpstreamBlocked,
    UpstreamError,
    BLOCKED_STATUS,
    generate_candidates,
    normalize_api_url,
)

# ============================================================================
# CONFIGURATION
# ============================================================================

API_HOST = os.environ.get("STALKER_API_HOST", "0.0.0.0")
API_PORT = int(os.environ.get("STALKER_API_PORT", "3000"))
PORTAL_TIMEOUT = float(os.environ.get("STALKER_TIMEOUT", "15"))   # Seconds per portal request
PROXY_TIMEOUT = 30                                                # Seconds for proxied fetches

BROWSER_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)
ACTIONS = ("handshake", "get_profile", "get_channels", "create_link")

# ============================================================================
# LOGGING
# ============================================================================

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s [%(levelname)s] %(name)s: %(message)s',
    datefmt='%H:%M:%S'
)
log = logging.getLogger(__name__)

app = Flask(__name__)
app.json.sort_keys = False
logging.getLogger('werkzeug').setLevel(logging.ERROR)


def error_response(error: StalkerPortalError):
    """JSON error body with category, upstream status and raw upstream body when known."""
    if isinstance(error, MissingToken):
        status = 400
    elif isinstance(error, UpstreamBlocked):
        status = 403
    elif isinstance(error, StreamUnavailable):
        status = 503
    elif isinstance(error, LinkResolutionFailed):
        status = 500
    elif isinstance(error, UpstreamError) and error.status and error.status >= 400 and error.status != BLOCKED_STATUS:
        status = error.status
    else:
        status = 502

    body = {'error': str(error), 'category': error.category}
    if error.status is not None:
        body['upstreamStatus'] = error.status
    if error.body not in (None, ''):
        body['details'] = error.body
    if isinstance(error, HandshakeExhausted) and error.last_error is not None:
        body['lastErrorCategory'] = getattr(error.last_error, 'category', type(error.last_error).__name__)
    return jsonify(body), status


# ============================================================================
# STALKER CONTROL ENDPOINT
# ============================================================================

@app.route('/api/stalker')
def api_stalker():
    action = request.args.get('action')
    mac = request.args.get('mac', '').strip()
    url = request.args.get('url', '').strip()
    token = request.args.get('token') or None
    cmd = request.args.get('cmd')

    if not action or not mac or not url:
        return jsonify({'error': 'Missing required parameters', 'category': 'bad_request'}), 400
    if action not in ACTIONS:
        return jsonify({'error': 'Invalid action', 'category': 'bad_request'}), 400
    if action == 'create_link' and not cmd:
        return jsonify({'error': 'cmd required for create_link', 'category': 'bad_request'}), 400

    try:
        session = PortalSession(mac, token=token)
    except ValueError as e:
        return jsonify({'error': str(e), 'category': 'bad_request'}), 400

    try:
        if action == 'handshake':
            candidates = generate_candidates(url)
            log.info(f"Probing {len(candidates)} candidates for {url}")
            with HandshakeProber(timeout=PORTAL_TIMEOUT) as prober:
                result = prober.handshake(session, candidates)
            return jsonify({**result.payload, 'real_url': result.real_url})

        api_url = normalize_api_url(url)
        with PortalClient(timeout=PORTAL_TIMEOUT) as client:
            if action == 'get_profile':
                return jsonify({'js': client.get_profile(session, api_url)})
            if action == 'get_channels':
                return jsonify({'js': {'data': client.get_channels(session, api_url)}})
            link = client.create_link(session, api_url, cmd)
            return jsonify({'url': link.resolved_url, 'cmd': link.cmd})
    except StalkerPortalError as e:
        log.error(f"API error for {url} ({action}): {e}")
        return error_response(e)


# ============================================================================
# BYTE PROXY
# ============================================================================

@app.route('/api/proxy')
def api_proxy():
    url = request.args.get('url')
    if not url:
        return jsonify({'error': 'Missing URL parameter'}), 400

    headers = {
        'User-Agent': request.headers.get('X-User-Agent') or BROWSER_USER_AGENT,
        'Accept': '*/*',
        'Accept-Encoding': 'gzip, deflate',
        'Connection': 'keep-alive',
    }
    referer = request.headers.get('X-Referer')
    if referer:
        headers['Referer'] = referer

    try:
        upstream = requests.get(url, headers=headers, timeout=PROXY_TIMEOUT, verify=False)
    except requests.exceptions.RequestException as e:
        log.error(f"Proxy error: {e}")
        return jsonify({'error': 'Failed to fetch resource', 'details': str(e)}), 502

    if upstream.status_code == BLOCKED_STATUS:
        log.error(f"Upstream returned {BLOCKED_STATUS} (Blocked/Forbidden)")
        return jsonify({
            'error': f'Provider blocked the request (Status {BLOCKED_STATUS})',
            'details': 'The IPTV provider blocked the connection. Try using a VPN or different network.',
            'upstreamStatus': BLOCKED_STATUS,
        }), 403
    if upstream.status_code >= 500:
        log.error(f"Upstream status: {upstream.status_code}")
        return jsonify({
            'error': 'Failed to fetch resource',
            'details': f'Upstream returned HTTP {upstream.status_code}',
            'upstreamStatus': upstream.status_code,
        }), 502

    return Response(
        upstream.content,
        status=upstream.status_code,
        headers={
            'Content-Type': upstream.headers.get('Content-Type') or 'application/octet-stream',
            'Access-Control-Allow-Origin': '*',
        },
    )


# ============================================================================
# MAIN
# ============================================================================

def main():
    log.info(f"API running on :{API_PORT}")
    app.run(host=API_HOST, port=API_PORT, debug=False, threaded=True)


if __name__ == "__main__":
    main()
