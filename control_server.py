"""
HTTP control endpoint for the supervisor
"""

import json
from datetime import datetime
from http.server import HTTPServer, BaseHTTPRequestHandler
from typing import Any, Dict

from models import UPDATE_ACTION
from logger import logger


MAX_BODY_BYTES = 64 * 1024
PAC_CONTENT_TYPE = "application/x-ns-proxy-autoconfig"


class ControlHandler(BaseHTTPRequestHandler):
    """Serves /control, /health and /proxy.pac"""

    def _send_json(self, status: int, payload: Dict[str, Any]):
        body = json.dumps(payload, indent=2).encode()
        self.send_response(status)
        self.send_header('Content-type', 'application/json')
        self.send_header('Content-Length', str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def do_GET(self):
        if self.path == '/health':
            self._handle_health()
        elif self.path == '/proxy.pac':
            self._handle_pac()
        else:
            self.send_response(404)
            self.end_headers()

    def do_POST(self):
        if self.path != '/control':
            self._send_json(404, {"success": False, "error": f"Unknown path {self.path}"})
            return

        try:
            length = int(self.headers.get('Content-Length', '0'))
        except ValueError:
            length = -1
        if length < 0 or length > MAX_BODY_BYTES:
            self._send_json(400, {"success": False, "error": "Invalid Content-Length"})
            return

        try:
            message = json.loads(self.rfile.read(length) or b'null')
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            self._send_json(400, {"success": False, "error": f"Malformed JSON: {e}"})
            return

        if not isinstance(message, dict) or message.get("action") != UPDATE_ACTION:
            action = message.get("action") if isinstance(message, dict) else None
            self._send_json(400, {"success": False, "error": f"Unknown action: {action!r}"})
            return

        self._send_json(200, self.server.supervisor.handle_message(message))

    def _handle_health(self):
        try:
            health_data = self.server.health_checker.get_health_status()
            self._send_json(200 if health_data["status"] == "healthy" else 503, health_data)
        except Exception as e:
            logger.error(f"Health check error: {e}")
            self._send_json(500, {
                "status": "error",
                "timestamp": datetime.now().isoformat(),
                "error": str(e)
            })

    def _handle_pac(self):
        policy = self.server.supervisor.current_policy
        if policy is None or policy.is_noop:
            self.send_response(404)
            self.end_headers()
            return

        body = policy.script.encode()
        self.send_response(200)
        self.send_header('Content-type', PAC_CONTENT_TYPE)
        self.send_header('Content-Length', str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def log_message(self, format, *args):
        logger.debug(f"Control request: {format % args}")


def create_control_server(supervisor, health_checker, host: str = '127.0.0.1', port: int = 8765) -> HTTPServer:
    """Bind the control endpoint; requests are handled one at a time"""
    server = HTTPServer((host, port), ControlHandler)
    server.supervisor = supervisor
    server.health_checker = health_checker
    return server
