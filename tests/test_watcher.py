"""Tests for container enumeration, watch cycles and scheduling."""

import threading
from datetime import datetime

import pytest

from docker_client import DockerClient
from errors import ConfigurationError, RegistryUnavailableError
from models import STATUS_ERROR, STATUS_NO_UPDATE, STATUS_UPDATE
from notify import make_dispatcher
from registries import REQUEST_TIMEOUT, Hub
from resolver import ImageResolver
from watcher import Watcher, parse_image_reference, validate_watcher_configuration

CONFIGURATION_VALID = {
    'socket': '/var/run/docker.sock',
    'port': 2375,
    'watchbydefault': True,
    'watchatstart': True,
    'cron': '0 * * * *',
    'concurrency': 5,
    'timeout': 300,
}


class RecordingSink:
    def __init__(self):
        self.published = []

    def publish(self, watcher, cycle):
        self.published.append((watcher, cycle))


@pytest.fixture
def hub():
    return Hub()


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def make_watcher(hub, sink, fake_docker):
    def _make(containers, configuration=None, on_update=None):
        return Watcher('local', configuration, ImageResolver([hub]),
                       docker=fake_docker(containers), sink=sink, on_update=on_update)
    return _make


class TestConfiguration:
    def test_valid(self):
        assert validate_watcher_configuration(CONFIGURATION_VALID) == CONFIGURATION_VALID

    def test_defaults(self):
        assert validate_watcher_configuration({}) == CONFIGURATION_VALID
        assert validate_watcher_configuration(None) == CONFIGURATION_VALID

    def test_invalid_type(self):
        with pytest.raises(ConfigurationError):
            validate_watcher_configuration({'watchbydefault': 'xxx'})

    def test_invalid_cron(self):
        with pytest.raises(ConfigurationError, match='cron'):
            validate_watcher_configuration({'cron': 'every hour'})

    def test_timeout_must_exceed_request_timeout(self):
        with pytest.raises(ConfigurationError, match='timeout'):
            validate_watcher_configuration({'timeout': REQUEST_TIMEOUT})
        assert validate_watcher_configuration({'timeout': REQUEST_TIMEOUT + 1})['timeout'] == REQUEST_TIMEOUT + 1

    def test_invalid_tag_filter(self):
        with pytest.raises(ConfigurationError, match='regex'):
            validate_watcher_configuration({'includetags': '([0-9]'})

    def test_docker_client_from_configuration(self):
        watcher = Watcher('remote', {'host': 'docker.example', 'port': 2376}, ImageResolver([Hub()]))
        assert isinstance(watcher.docker, DockerClient)
        assert watcher.docker.endpoint == 'http://docker.example:2376'


class TestParseImageReference:
    @pytest.mark.parametrize('reference, expected', [
        ('image', (None, 'image', 'latest')),
        ('organization/image:version', (None, 'organization/image', 'version')),
        ('gcr.io/project/app:1.2.3', ('gcr.io', 'project/app', '1.2.3')),
        ('localhost:5000/app', ('localhost:5000', 'app', 'latest')),
        ('nginx:1.25@sha256:abcdef', (None, 'nginx', '1.25')),
    ])
    def test_parse(self, reference, expected):
        assert parse_image_reference(reference) == expected


class TestContainers:
    def test_watch_by_default(self, make_watcher, container):
        watcher = make_watcher([
            container('a', 'image'),
            container('b', 'image', {'tagwatch.watch': 'false'}),
        ])
        assert [c['Names'][0] for c in watcher.get_containers()] == ['/a']

    def test_opt_in_only(self, make_watcher, container):
        watcher = make_watcher([
            container('a', 'image'),
            container('b', 'image', {'tagwatch.watch': 'true'}),
        ], {'watchbydefault': False})
        assert [c['Names'][0] for c in watcher.get_containers()] == ['/b']

    def test_map_container_to_image(self, make_watcher, container):
        watcher = make_watcher([])
        image = watcher.map_container_to_image(container('web', 'organization/image:version'))
        assert image.registry == 'hub'
        assert image.registry_url == 'https://registry-1.docker.io/v2'
        assert image.image == 'organization/image'
        assert image.version == 'version'
        assert image.version_date == '2019-05-20T12:02:06.307Z'
        assert (image.architecture, image.os, image.size) == ('arch', 'os', 10)
        assert image.include_tags is None
        assert image.exclude_tags is None
        assert not image.is_semver

    def test_map_container_labels_override_defaults(self, make_watcher, container):
        watcher = make_watcher([], {'includetags': r'^\d', 'excludetags': 'rc'})
        image = watcher.map_container_to_image(
            container('web', 'image:1.0.0', {'tagwatch.tag.include': r'^v\d'}))
        assert image.include_tags == r'^v\d'
        assert image.exclude_tags == 'rc'
        assert image.is_semver

    def test_map_container_started_from_image_id(self, hub, sink, fake_docker, container):
        docker = fake_docker(images={'sha256:0123': {
            'architecture': 'amd64', 'os': 'linux', 'size': 1, 'created_at': None,
            'repo_tags': ['gcr.io/project/app:2.0.0'],
        }})
        watcher = Watcher('local', None, ImageResolver([hub]), docker=docker)
        image = watcher.map_container_to_image(container('app', 'sha256:0123'))
        assert (image.registry_url, image.image, image.version) == ('gcr.io', 'project/app', '2.0.0')


class TestWatch:
    def test_cycle_with_update(self, make_watcher, container, hub, sink, monkeypatch):
        monkeypatch.setattr(hub, 'get_tags', lambda image: {'tags': ['1.0.0', '1.1.0']})
        updates = []
        watcher = make_watcher([container('web', 'image:1.0.0')],
                               on_update=lambda image, version: updates.append((image.image, version)))

        cycle = watcher.watch()

        assert [r.status for r in cycle.results] == [STATUS_UPDATE]
        assert cycle.results[0].new_version == '1.1.0'
        assert cycle.results[0].container_name == 'web'
        assert updates == [('library/image', '1.1.0')]
        assert sink.published == [('local', cycle)]

    def test_failing_trigger_still_publishes(self, make_watcher, container, hub, sink, monkeypatch):
        monkeypatch.setattr(hub, 'get_tags', lambda image: {'tags': ['1.0.0', '1.1.0']})
        triggered = []

        def on_update(image, version):
            triggered.append(image.image)
            raise RuntimeError('trigger down')

        watcher = make_watcher([container('a', 'one:1.0.0'), container('b', 'two:1.0.0')],
                               on_update=on_update)
        cycle = watcher.watch()

        assert sorted(triggered) == ['library/one', 'library/two']
        assert sink.published == [('local', cycle)]

    def test_misconfigured_notification_still_publishes(self, make_watcher, container, hub, sink,
                                                        monkeypatch):
        monkeypatch.setattr(hub, 'get_tags', lambda image: {'tags': ['1.0.0', '1.1.0']})
        dispatch = make_dispatcher({'webhook': {'url': 'https://hooks.example/x',
                                                'headers': 'Authorization: Bearer x'}}, 'local')
        cycle = make_watcher([container('web', 'image:1.0.0')], on_update=dispatch).watch()

        assert [r.status for r in cycle.results] == [STATUS_UPDATE]
        assert sink.published == [('local', cycle)]

    def test_cycle_without_update(self, make_watcher, container, hub, sink, monkeypatch):
        monkeypatch.setattr(hub, 'get_tags', lambda image: {'tags': ['1.0.0']})
        cycle = make_watcher([container('web', 'image:1.0.0')]).watch()
        assert [r.status for r in cycle.results] == [STATUS_NO_UPDATE]
        assert cycle.results[0].new_version is None

    def test_non_semver_current_version(self, make_watcher, container, hub, monkeypatch):
        monkeypatch.setattr(hub, 'get_tags', lambda image: {'tags': ['latest']})
        cycle = make_watcher([container('web', 'image')]).watch()
        result = cycle.results[0]
        assert result.status == STATUS_NO_UPDATE
        assert (result.image.image, result.image.version, result.image.is_semver) == \
            ('library/image', 'latest', False)

    def test_unsupported_registry_is_no_update(self, make_watcher, container):
        cycle = make_watcher([container('web', 'quay.io/org/app:1.0.0')]).watch()
        assert [r.status for r in cycle.results] == [STATUS_NO_UPDATE]
        assert cycle.results[0].image.registry is None

    def test_registry_error_does_not_abort_cycle(self, make_watcher, container, hub, sink, monkeypatch):
        def get_tags(image):
            if image.image == 'library/slow':
                raise RegistryUnavailableError('hub: request timed out')
            return {'tags': ['1.0.0', '2.0.0']}

        monkeypatch.setattr(hub, 'get_tags', get_tags)
        watcher = make_watcher([
            container('a', 'fast:1.0.0'),
            container('b', 'slow:1.0.0'),
            container('c', 'other:1.0.0'),
        ])

        cycle = watcher.watch()

        by_name = {r.container_name: r for r in cycle.results}
        assert len(cycle.results) == 3
        assert by_name['b'].status == STATUS_ERROR
        assert 'timed out' in by_name['b'].error
        assert by_name['a'].new_version == '2.0.0'
        assert by_name['c'].new_version == '2.0.0'
        assert len(sink.published) == 1

    def test_invalid_label_regex_is_image_error(self, make_watcher, container, hub, monkeypatch):
        monkeypatch.setattr(hub, 'get_tags', lambda image: {'tags': []})
        cycle = make_watcher([container('web', 'image:1.0.0', {'tagwatch.tag.include': '([0-9]'})]).watch()
        assert cycle.results[0].status == STATUS_ERROR

    def test_cycle_timeout(self, make_watcher, container, hub, sink, monkeypatch):
        release = threading.Event()

        def get_tags(image):
            if image.image == 'library/slow':
                release.wait(5)
            return {'tags': ['2.0.0']}

        monkeypatch.setattr(hub, 'get_tags', get_tags)
        watcher = make_watcher([container('a', 'fast:1.0.0'), container('b', 'slow:1.0.0')])
        watcher.configuration['timeout'] = 0.5
        try:
            cycle = watcher.watch()
        finally:
            release.set()

        by_name = {r.container_name: r for r in cycle.results}
        assert by_name['a'].status == STATUS_UPDATE
        assert by_name['b'].status == STATUS_ERROR
        assert 'timed out' in by_name['b'].error
        assert len(sink.published) == 1

    def test_no_containers(self, make_watcher, sink):
        cycle = make_watcher([]).watch()
        assert cycle.results == []
        assert len(sink.published) == 1

    def test_overlapping_cycle_is_dropped(self, make_watcher, sink):
        watcher = make_watcher([])
        watcher._cycle_lock.acquire()
        try:
            assert watcher.watch() is None
        finally:
            watcher._cycle_lock.release()
        assert sink.published == []
        assert watcher.watch() is not None


class TestSchedule:
    def test_interval(self, make_watcher):
        assert make_watcher([], {'interval': 600}).next_delay() == 600.0

    def test_cron(self, make_watcher):
        watcher = make_watcher([], {'cron': '0 * * * *'})
        assert watcher.next_delay(datetime(2024, 1, 1, 10, 30)) == 1800.0

    def test_run_forever_stops(self, make_watcher, sink):
        watcher = make_watcher([], {'interval': 3600})
        watcher.start()
        watcher.stop(timeout=5)
        assert not watcher._thread.is_alive()
        assert len(sink.published) == 1
