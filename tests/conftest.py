"""Shared fixtures: canned registry responses and a fake Docker endpoint."""

from unittest.mock import MagicMock

import pytest
import requests

from models import ImageDescriptor
from registries import HUB_REGISTRY_URL


def _make_response(status_code=200, body=None, headers=None, links=None,
                   url='https://registry.example/v2'):
    response = MagicMock()
    response.status_code = status_code
    response.json.return_value = body if body is not None else {}
    response.headers = headers or {}
    response.links = links or {}
    response.url = url
    if status_code >= 400:
        response.raise_for_status.side_effect = requests.HTTPError(f"{status_code} error")
    return response


@pytest.fixture
def make_response():
    """Factory for requests.Response stand-ins."""
    return _make_response


class FakeDocker:
    """In-memory container runtime exposing the two calls watchers use."""

    def __init__(self, containers=None, images=None):
        self.containers = containers or []
        self.images = images or {}

    def list_containers(self, filters=None):
        return list(self.containers)

    def inspect_image(self, image_ref):
        return self.images.get(image_ref, {
            'architecture': 'arch',
            'os': 'os',
            'size': 10,
            'created_at': '2019-05-20T12:02:06.307Z',
            'repo_tags': [],
        })


@pytest.fixture
def fake_docker():
    return FakeDocker


def make_container(name, image, labels=None):
    return {
        'Id': f"{name}-0123456789abcdef",
        'Names': [f"/{name}"],
        'Image': image,
        'Labels': labels or {},
    }


@pytest.fixture
def container():
    return make_container


@pytest.fixture
def semver_image():
    return ImageDescriptor(image='library/test', version='5.4.3', registry='hub',
                           registry_url=HUB_REGISTRY_URL, is_semver=True)


@pytest.fixture
def coerced_semver_image():
    return ImageDescriptor(image='library/test', version='release-5.4', registry='hub',
                           registry_url=HUB_REGISTRY_URL, is_semver=True)


@pytest.fixture
def not_semver_image():
    return ImageDescriptor(image='library/test', version='notasemver', registry='hub',
                           registry_url=HUB_REGISTRY_URL, is_semver=False)
