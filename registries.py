"""
Registry providers: Docker Hub, Amazon ECR, Google GCR and Azure ACR.

Every provider normalizes image references for its registry, validates its
own credential configuration and authenticates calls to the registry v2 API.
Bearer tokens are cached per provider instance; a refresh is serialized by
the instance's lock so concurrent lookups share a single token request.
"""

import base64
import json
import logging
import re
import threading
import time
from dataclasses import replace
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple
from urllib.parse import urljoin, urlparse

import boto3
import requests
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError
from jsonschema import Draft202012Validator, FormatChecker
from jsonschema.exceptions import best_match

from errors import AuthenticationError, ConfigurationError, RegistryUnavailableError
from models import ImageDescriptor

logger = logging.getLogger(__name__)

REQUEST_TIMEOUT = 30
DEFAULT_TOKEN_TTL = 300
TOKEN_EXPIRY_MARGIN = 30

# one attempt, bounded like every other registry request
ECR_CLIENT_CONFIG = Config(connect_timeout=10, read_timeout=REQUEST_TIMEOUT - 10,
                           retries={"total_max_attempts": 1})

HUB_REGISTRY_URL = "https://registry-1.docker.io/v2"
HUB_AUTH_URL = "https://auth.docker.io/token"
HUB_HOSTS = {"docker.io", "index.docker.io", "registry-1.docker.io"}
DEFAULT_NAMESPACE = "library"

ECR_HOST = re.compile(r'^[^.]+\.dkr\.ecr\.([^.]+)\.amazonaws\.com$')
GCR_HOST = re.compile(r'^(?:[^.]+\.)?gcr\.io$')
ACR_HOST = re.compile(r'^[^.]+\.azurecr\.io$')

FORMAT_CHECKER = FormatChecker()


@FORMAT_CHECKER.checks('base64', raises=ValueError)
def _is_base64(value: Any) -> bool:
    if isinstance(value, str):
        base64.b64decode(value, validate=True)
    return True


def _credential_schema(properties: Dict[str, Any], **constraints) -> Dict[str, Any]:
    schema = {
        "type": "object",
        "properties": properties,
        "additionalProperties": False,
    }
    schema.update(constraints)
    return schema


_STRING = {"type": "string", "minLength": 1}

HUB_SCHEMA = _credential_schema(
    {"login": _STRING, "token": _STRING, "auth": {"type": "string", "format": "base64"}},
    dependentRequired={"login": ["token"], "token": ["login"]},
)
ECR_SCHEMA = _credential_schema(
    {"region": _STRING, "accesskeyid": _STRING, "secretaccesskey": _STRING},
    dependentRequired={"accesskeyid": ["secretaccesskey", "region"],
                       "secretaccesskey": ["accesskeyid"]},
)
ACR_SCHEMA = _credential_schema(
    {"clientid": _STRING, "clientsecret": _STRING},
    dependentRequired={"clientid": ["clientsecret"], "clientsecret": ["clientid"]},
)
GCR_SCHEMA = _credential_schema(
    {"clientemail": _STRING, "privatekey": _STRING},
    dependentRequired={"clientemail": ["privatekey"], "privatekey": ["clientemail"]},
)


def _describe(error) -> str:
    field = '.'.join(str(p) for p in error.absolute_path)
    if error.validator == 'format':
        return f"'{field}' must be a valid {error.validator_value} string"
    return error.message


def registry_host(registry_url: Optional[str]) -> Optional[str]:
    """Return the lower-cased host of a registry URL, with or without scheme."""
    if not registry_url:
        return None
    url = registry_url if '://' in registry_url else f"https://{registry_url}"
    return urlparse(url).netloc.lower() or None


def base64_credentials(login: str, secret: str) -> str:
    return base64.b64encode(f"{login}:{secret}".encode('utf-8')).decode('ascii')


def _with_authorization(request_options: Mapping[str, Any], value: str) -> Dict[str, Any]:
    """Copy request options, setting the Authorization header."""
    options = dict(request_options)
    options['headers'] = {**(request_options.get('headers') or {}), 'Authorization': value}
    return options


def _raise_for_status(name: str, response: requests.Response) -> None:
    if response.status_code in (401, 403):
        raise AuthenticationError(
            f"{name}: registry refused credentials for {response.url} ({response.status_code})"
        )
    if response.status_code >= 400:
        raise RegistryUnavailableError(
            f"{name}: unexpected status {response.status_code} from {response.url}"
        )


class Registry:
    """Base class of registry providers.

    Subclasses set ``name`` and ``schema`` and implement ``match``. The
    default ``authenticate`` attaches static Basic credentials, and
    ``get_tags`` answers a Bearer challenge from the registry once.
    """

    name: str = ''
    schema: Dict[str, Any] = {"type": "object"}
    # a present key rules out the keys listed with it
    exclusive: Dict[str, Tuple[str, ...]] = {}

    def __init__(self, configuration: Optional[Mapping[str, Any]] = None):
        self.configuration = MappingProxyType(self.validate_configuration(configuration))
        self._tokens: Dict[str, Tuple[str, float]] = {}
        self._token_lock = threading.Lock()

    @classmethod
    def validate_configuration(cls, configuration: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
        """Validate raw provider configuration, returning a plain dict.

        Raises ConfigurationError on missing, conflicting or malformed fields.
        """
        if configuration is None:
            return {}
        if not isinstance(configuration, Mapping):
            raise ConfigurationError(f"{cls.name} registry: configuration must be an object")
        configuration = dict(configuration)
        for key, excluded in cls.exclusive.items():
            if key not in configuration:
                continue
            for other in excluded:
                if other in configuration:
                    raise ConfigurationError(
                        f"{cls.name} registry: '{other}' is not allowed with '{key}'")
        validator = Draft202012Validator(cls.schema, format_checker=FORMAT_CHECKER)
        error = best_match(validator.iter_errors(configuration))
        if error is not None:
            raise ConfigurationError(f"{cls.name} registry: {_describe(error)}")
        return configuration

    def match(self, image: ImageDescriptor) -> bool:
        raise NotImplementedError

    def normalize_image(self, image: ImageDescriptor) -> ImageDescriptor:
        host = registry_host(image.registry_url)
        return replace(image, registry=self.name, registry_url=f"https://{host}/v2")

    def get_auth_credentials(self) -> Optional[str]:
        return None

    def authenticate(self, image: ImageDescriptor, request_options: Mapping[str, Any]) -> Dict[str, Any]:
        credentials = self.get_auth_credentials()
        if credentials:
            return _with_authorization(request_options, f"Basic {credentials}")
        return dict(request_options)

    def get_tags(self, image: ImageDescriptor) -> Dict[str, List[str]]:
        """List every tag of the image's repository, in registry order."""
        url = f"{image.registry_url}/{image.image}/tags/list"
        options = self.authenticate(image, {
            'headers': {'Accept': 'application/json'},
            'timeout': REQUEST_TIMEOUT,
        })

        tags: List[str] = []
        while url:
            response = self._get(url, options)
            challenge = response.headers.get('WWW-Authenticate', '')
            bearer_sent = options['headers'].get('Authorization', '').startswith('Bearer ')
            if response.status_code == 401 and challenge.lower().startswith('bearer ') and not bearer_sent:
                token = self._challenge_token(challenge)
                options = _with_authorization(options, f"Bearer {token}")
                response = self._get(url, options)
            if response.status_code == 401:
                self._evict_token(options['headers'].get('Authorization', ''))
            _raise_for_status(self.name, response)

            try:
                tags.extend(response.json().get('tags') or [])
            except ValueError as e:
                raise RegistryUnavailableError(f"{self.name}: invalid tag list from {url}: {e}")

            next_url = response.links.get('next', {}).get('url')
            url = urljoin(url, next_url) if next_url else None

        logger.debug(f"{self.name}: {len(tags)} tags for {image.image}")
        return {'tags': tags}

    def _get(self, url: str, options: Mapping[str, Any]) -> requests.Response:
        try:
            return requests.get(url, **options)
        except requests.RequestException as e:
            raise RegistryUnavailableError(f"{self.name}: request to {url} failed: {e}")

    def _challenge_token(self, challenge: str) -> str:
        params = dict(re.findall(r'(\w+)="([^"]*)"', challenge))
        realm = params.pop('realm', None)
        if not realm:
            raise AuthenticationError(f"{self.name}: bearer challenge without realm")
        key = f"challenge:{realm}:{params.get('scope', '')}"
        return self._cached_token(
            key, lambda: self._fetch_bearer(realm, params, self.get_auth_credentials()))

    def _cached_token(self, key: str, fetch: Callable[[], Tuple[str, float]]) -> str:
        """Return a cached token for ``key``, refreshing it at most once at a time."""
        entry = self._tokens.get(key)
        if entry and entry[1] > time.monotonic():
            return entry[0]
        with self._token_lock:
            entry = self._tokens.get(key)
            if entry and entry[1] > time.monotonic():
                return entry[0]
            token, ttl = fetch()
            self._tokens[key] = (token, time.monotonic() + max(float(ttl) - TOKEN_EXPIRY_MARGIN, 0.0))
            return token

    def _evict_token(self, authorization: str) -> None:
        """Forget a cached token the registry has rejected."""
        token = authorization.partition(' ')[2]
        if not token:
            return
        with self._token_lock:
            for key in [k for k, (cached, _) in self._tokens.items() if cached == token]:
                del self._tokens[key]

    def _fetch_bearer(self, url: str, params: Mapping[str, str],
                      credentials: Optional[str]) -> Tuple[str, float]:
        headers = {'Accept': 'application/json'}
        if credentials:
            headers['Authorization'] = f"Basic {credentials}"
        try:
            response = requests.get(url, params=dict(params), headers=headers, timeout=REQUEST_TIMEOUT)
            response.raise_for_status()
            body = response.json()
        except (requests.RequestException, ValueError) as e:
            raise AuthenticationError(f"{self.name}: token request to {url} failed: {e}")

        token = body.get('token') or body.get('access_token')
        if not token:
            raise AuthenticationError(f"{self.name}: no token in response from {url}")
        return token, body.get('expires_in') or DEFAULT_TOKEN_TTL


class Hub(Registry):
    """Docker Hub, and the fallback for images without a registry host."""

    name = 'hub'
    schema = HUB_SCHEMA
    exclusive = {'auth': ('login', 'token')}

    def match(self, image: ImageDescriptor) -> bool:
        host = registry_host(image.registry_url)
        return host is None or host in HUB_HOSTS

    def normalize_image(self, image: ImageDescriptor) -> ImageDescriptor:
        repository = image.image
        if '/' not in repository:
            repository = f"{DEFAULT_NAMESPACE}/{repository}"
        return replace(image, registry=self.name, registry_url=HUB_REGISTRY_URL, image=repository)

    def get_auth_credentials(self) -> Optional[str]:
        if self.configuration.get('auth'):
            return self.configuration['auth']
        if self.configuration.get('login') and self.configuration.get('token'):
            return base64_credentials(self.configuration['login'], self.configuration['token'])
        return None

    def authenticate(self, image: ImageDescriptor, request_options: Mapping[str, Any]) -> Dict[str, Any]:
        scope = f"repository:{image.image}:pull"
        params = {'service': 'registry.docker.io', 'scope': scope, 'grant_type': 'password'}
        token = self._cached_token(
            scope, lambda: self._fetch_bearer(HUB_AUTH_URL, params, self.get_auth_credentials()))
        return _with_authorization(request_options, f"Bearer {token}")


class Ecr(Registry):
    """Amazon Elastic Container Registry, authenticated through boto3."""

    name = 'ecr'
    schema = ECR_SCHEMA

    def __init__(self, configuration: Optional[Mapping[str, Any]] = None):
        super().__init__(configuration)
        self._clients: Dict[str, Any] = {}

    def match(self, image: ImageDescriptor) -> bool:
        host = registry_host(image.registry_url)
        return bool(host and ECR_HOST.match(host))

    def _region(self, image: ImageDescriptor) -> Optional[str]:
        match = ECR_HOST.match(registry_host(image.registry_url) or '')
        return match.group(1) if match else self.configuration.get('region')

    def _client(self, region: Optional[str]):
        if region not in self._clients:
            kwargs = {}
            if self.configuration.get('accesskeyid'):
                kwargs['aws_access_key_id'] = self.configuration['accesskeyid']
                kwargs['aws_secret_access_key'] = self.configuration['secretaccesskey']
            self._clients[region] = boto3.client('ecr', region_name=region,
                                                 config=ECR_CLIENT_CONFIG, **kwargs)
        return self._clients[region]

    def _fetch_authorization(self, region: Optional[str]) -> Tuple[str, float]:
        try:
            response = self._client(region).get_authorization_token()
            data = response['authorizationData'][0]
            token = data['authorizationToken']
        except (BotoCoreError, ClientError, KeyError, IndexError) as e:
            raise AuthenticationError(f"ecr: authorization token request failed: {e}")

        expires_at = data.get('expiresAt')
        ttl = (expires_at - datetime.now(timezone.utc)).total_seconds() if expires_at else DEFAULT_TOKEN_TTL
        return token, ttl

    def authenticate(self, image: ImageDescriptor, request_options: Mapping[str, Any]) -> Dict[str, Any]:
        region = self._region(image)
        token = self._cached_token(f"ecr:{region}", lambda: self._fetch_authorization(region))
        return _with_authorization(request_options, f"Basic {token}")


class Gcr(Registry):
    """Google Container Registry, authenticated with a service-account key."""

    name = 'gcr'
    schema = GCR_SCHEMA

    def match(self, image: ImageDescriptor) -> bool:
        host = registry_host(image.registry_url)
        return bool(host and GCR_HOST.match(host))

    def get_auth_credentials(self) -> Optional[str]:
        if self.configuration.get('clientemail') and self.configuration.get('privatekey'):
            key = json.dumps({
                'client_email': self.configuration['clientemail'],
                'private_key': self.configuration['privatekey'],
            })
            return base64_credentials('_json_key', key)
        return None

    def authenticate(self, image: ImageDescriptor, request_options: Mapping[str, Any]) -> Dict[str, Any]:
        host = registry_host(image.registry_url)
        scope = f"repository:{image.image}:pull"
        token = self._cached_token(
            f"{host}:{scope}",
            lambda: self._fetch_bearer(f"https://{host}/v2/token", {'scope': scope},
                                       self.get_auth_credentials()))
        return _with_authorization(request_options, f"Bearer {token}")


class Acr(Registry):
    """Azure Container Registry, authenticated with a service principal."""

    name = 'acr'
    schema = ACR_SCHEMA

    def match(self, image: ImageDescriptor) -> bool:
        host = registry_host(image.registry_url)
        return bool(host and ACR_HOST.match(host))

    def get_auth_credentials(self) -> Optional[str]:
        if self.configuration.get('clientid') and self.configuration.get('clientsecret'):
            return base64_credentials(self.configuration['clientid'], self.configuration['clientsecret'])
        return None


# Lookup order: the first provider whose match() accepts an image wins.
# Hub is last since it accepts every image without a registry host.
REGISTRY_PROVIDERS = (Ecr, Gcr, Acr, Hub)


def build_registries(configuration: Optional[Mapping[str, Any]] = None) -> List[Registry]:
    """Instantiate every provider in lookup order, skipping misconfigured ones."""
    configuration = configuration or {}
    registries = []
    for provider in REGISTRY_PROVIDERS:
        try:
            registries.append(provider(configuration.get(provider.name)))
        except ConfigurationError as e:
            logger.error(f"Registry '{provider.name}' disabled: {e}")
    return registries
