from http.server import BaseHTTPRequestHandler, HTTPServer
import json


class Handler(BaseHTTPRequestHandler):
    def do_GET(self) -> None:  # noqa: N802
        self._respond(b"")

    def do_POST(self) -> None:  # noqa: N802
        length = int(self.headers.get("Content-Length", 0))
        self._respond(self.rfile.read(length) if length else b"")

    def _respond(self, body: bytes) -> None:
        payload = {
            "message": "hello from local app",
            "method": self.command,
            "path": self.path,
            "body": body.decode("utf-8", errors="replace"),
        }
        data = json.dumps(payload).encode("utf-8")
        self.send_response(200)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(data)))
        self.end_headers()
        self.wfile.write(data)


def main() -> None:
    server = HTTPServer(("127.0.0.1", 8000), Handler)
    print("local app listening on http://127.0.0.1:8000")
    server.serve_forever()


if __name__ == "__main__":
    main()
