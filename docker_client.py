"""Docker Engine API client limited to what watchers need.

Talks to the engine over its Unix socket (default) or plain TCP, using a
requests session with a Unix-domain transport adapter.
"""

import json
import socket as _socket
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import requests
from requests.adapters import HTTPAdapter as _HTTPAdapter
from urllib3.connection import HTTPConnection as _HTTPConnection
from urllib3.connectionpool import HTTPConnectionPool as _HTTPConnectionPool

from errors import ContainerRuntimeError

DEFAULT_SOCKET_PATH = "/var/run/docker.sock"
REQUEST_TIMEOUT = 30


class _UnixSocketConnection(_HTTPConnection):
    """HTTPConnection that connects to the Docker engine socket."""

    def __init__(self, socket_path: str):
        super().__init__('localhost')
        self._socket_path = socket_path

    def connect(self):
        sock = _socket.socket(_socket.AF_UNIX, _socket.SOCK_STREAM)
        sock.connect(self._socket_path)
        self.sock = sock


class _UnixSocketPool(_HTTPConnectionPool):
    """Connection pool whose connections all use the engine socket."""

    def __init__(self, socket_path: str):
        super().__init__('localhost')
        self._socket_path = socket_path

    def _new_conn(self):
        return _UnixSocketConnection(self._socket_path)


class _UnixSocketAdapter(_HTTPAdapter):
    """Route every request of the session through one Unix socket."""

    def __init__(self, socket_path: str):
        self._socket_path = socket_path
        super().__init__()

    def get_connection(self, url: str, proxies=None):
        return _UnixSocketPool(self._socket_path)

    # requests >= 2.32 calls this one instead
    def get_connection_with_tls_context(self, request, verify, proxies=None, cert=None):
        return _UnixSocketPool(self._socket_path)


class DockerClient:
    """List containers and inspect images through the Docker Engine API."""

    def __init__(self, socket_path: str = DEFAULT_SOCKET_PATH,
                 host: Optional[str] = None, port: int = 2375):
        self._session = requests.Session()
        if host:
            self._base_url = f"http://{host}:{port}"
        else:
            self._session.mount('http+unix://', _UnixSocketAdapter(socket_path))
            self._base_url = 'http+unix://docker'
        self.endpoint = self._base_url if host else socket_path

    def _get(self, path: str, **kwargs) -> Any:
        try:
            response = self._session.get(f"{self._base_url}{path}", timeout=REQUEST_TIMEOUT, **kwargs)
            response.raise_for_status()
            return response.json()
        except (requests.RequestException, ValueError) as e:
            raise ContainerRuntimeError(f"Docker API call {path} on {self.endpoint} failed: {e}")

    def list_containers(self, filters: Optional[Dict[str, List[str]]] = None) -> List[Dict[str, Any]]:
        """Return container summaries (``Id``, ``Names``, ``Image``, ``Labels``...)."""
        params = {}
        if filters:
            params['filters'] = json.dumps(filters)
        return self._get('/containers/json', params=params)

    def inspect_image(self, image_ref: str) -> Dict[str, Any]:
        data = self._get(f"/images/{quote(image_ref, safe='/:@')}/json")
        return {
            'architecture': data.get('Architecture'),
            'os': data.get('Os'),
            'size': data.get('Size'),
            'created_at': data.get('Created'),
            'repo_tags': data.get('RepoTags') or [],
        }
