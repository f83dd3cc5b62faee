import json
import threading
import logging
from datetime import datetime
from http.server import HTTPServer, BaseHTTPRequestHandler
import psutil
import config
from graceful_shutdown import get_stats


class HealthCheckHandler(BaseHTTPRequestHandler):
    """
    GET /health - stan aplikacji (JSON)
    POST /scan  - ręczne odświeżenie (cykl skanowania na żądanie)
    """

    # Ustawiane przez start_health_server
    scheduler = None

    def _send_json(self, code, payload):
        body = json.dumps(payload, indent=2, ensure_ascii=False).encode('utf-8')
        self.send_response(code)
        self.send_header('Content-type', 'application/json')
        self.send_header('Content-Length', str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def do_GET(self):
        if self.path.rstrip('/') not in ('', '/health'):
            self._send_json(404, {"error": "not found"})
            return

        status = self.get_app_status()
        self._send_json(200 if status["status"] == "healthy" else 503, status)

    def do_POST(self):
        if self.path.rstrip('/') != '/scan':
            self._send_json(404, {"error": "not found"})
            return

        if self.scheduler is None:
            self._send_json(503, {"status": "unavailable"})
            return

        if self.scheduler.trigger_now():
            self._send_json(202, {"status": "started"})
        else:
            self._send_json(200, {"status": "already_running"})

    def get_app_status(self):
        stats = get_stats()
        memory_mb = psutil.Process().memory_info().rss / (1024 * 1024)

        is_healthy = stats.get("running", False) and not stats.get("shutdown_requested", False)
        scheduler = self.scheduler

        return {
            "status": "healthy" if is_healthy else "unhealthy",
            "timestamp": datetime.now().isoformat(),
            "uptime": stats.get("uptime"),
            "cycles": stats.get("cycles", 0),
            "processed_messages": stats.get("processed_messages", 0),
            "delivered_codes": stats.get("delivered_codes", 0),
            "failed_accounts": stats.get("failed_accounts", 0),
            "last_cycle": stats.get("last_cycle"),
            "scan_running": scheduler.is_running() if scheduler else False,
            "memory_mb": round(memory_mb, 1),
        }

    def log_message(self, format, *args):
        """Requesty HTTP tylko na poziomie DEBUG"""
        logging.debug(f"🏥 {self.address_string()} {format % args}")


def start_health_server(scheduler=None, host=None, port=None):
    """
    Uruchamia serwer health check w osobnym wątku

    Returns:
        HTTPServer: działający serwer (server.shutdown() go zatrzymuje)
    """
    host = host or config.HEALTH_CHECK_HOST
    port = config.HEALTH_CHECK_PORT if port is None else port

    handler = type("BoundHealthCheckHandler", (HealthCheckHandler,), {"scheduler": scheduler})
    server = HTTPServer((host, port), handler)

    thread = threading.Thread(target=server.serve_forever, name="health-check", daemon=True)
    thread.start()

    logging.info(f'🏥 Health check server uruchomiony na {host}:{server.server_address[1]}')
    logging.info(f'🔗 Test: curl http://{host}:{server.server_address[1]}/health')
    return server
