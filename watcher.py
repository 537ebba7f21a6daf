"""
Container watchers.

A watcher enumerates the running containers of one Docker endpoint, builds
an image descriptor for each watched container and resolves it against its
registry. Containers are resolved concurrently; the cycle result is
published once every container has completed, failed or timed out.
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from concurrent.futures import TimeoutError as FuturesTimeoutError
from datetime import datetime
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from croniter import croniter
from jsonschema import Draft202012Validator
from jsonschema.exceptions import best_match

from docker_client import DEFAULT_SOCKET_PATH, DockerClient
from errors import ConfigurationError, TagWatchError
from models import (STATUS_ERROR, STATUS_NO_UPDATE, STATUS_UPDATE,
                    ContainerResult, CycleResult, ImageDescriptor)
from registries import REQUEST_TIMEOUT
from resolver import ImageResolver
from versions import compile_tag_filter, is_semver

logger = logging.getLogger(__name__)

LABEL_WATCH = 'tagwatch.watch'
LABEL_INCLUDE_TAGS = 'tagwatch.tag.include'
LABEL_EXCLUDE_TAGS = 'tagwatch.tag.exclude'

DEFAULT_TAG = 'latest'

WATCHER_SCHEMA = {
    "type": "object",
    "properties": {
        "socket": {"type": "string", "minLength": 1},
        "host": {"type": "string", "minLength": 1},
        "port": {"type": "integer", "minimum": 1, "maximum": 65535},
        "watchbydefault": {"type": "boolean"},
        "watchatstart": {"type": "boolean"},
        "cron": {"type": "string", "minLength": 1},
        "interval": {"type": "integer", "minimum": 1},
        "includetags": {"type": "string"},
        "excludetags": {"type": "string"},
        "concurrency": {"type": "integer", "minimum": 1},
        "timeout": {"type": "number", "exclusiveMinimum": 0},
    },
    "additionalProperties": False,
}

WATCHER_DEFAULTS = {
    'socket': DEFAULT_SOCKET_PATH,
    'port': 2375,
    'watchbydefault': True,
    'watchatstart': True,
    'cron': '0 * * * *',
    'concurrency': 5,
    'timeout': 300,
}

UpdateCallback = Callable[[ImageDescriptor, str], None]


def validate_watcher_configuration(configuration: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    """Validate watcher configuration and fill in defaults."""
    configuration = dict(configuration or {})
    error = best_match(Draft202012Validator(WATCHER_SCHEMA).iter_errors(configuration))
    if error is not None:
        raise ConfigurationError(f"watcher: {error.message}")

    validated = {**WATCHER_DEFAULTS, **configuration}
    # a single registry request must fit inside the cycle
    if validated['timeout'] <= REQUEST_TIMEOUT:
        raise ConfigurationError(
            f"watcher: timeout must be greater than the {REQUEST_TIMEOUT}s registry request timeout")
    if not croniter.is_valid(validated['cron']):
        raise ConfigurationError(f"watcher: invalid cron expression '{validated['cron']}'")
    for key in ('includetags', 'excludetags'):
        if validated.get(key):
            compile_tag_filter(validated[key])
    return validated


def parse_image_reference(reference: str) -> Tuple[Optional[str], str, str]:
    """
    Split an image reference into registry host, repository and tag.

    Args:
        reference: Image reference (e.g. 'nginx', 'linuxserver/calibre:1.2',
                   'gcr.io/project/image:tag')

    Returns:
        Tuple of (registry host or None, repository, tag)
    """
    name = reference.split('@', 1)[0]
    registry = None

    parts = name.split('/', 1)
    # Registry indicators: contains '.', has a port ':', or is localhost
    if len(parts) == 2 and ('.' in parts[0] or ':' in parts[0] or parts[0] == 'localhost'):
        registry, name = parts

    repository, sep, tag = name.rpartition(':')
    if not sep:
        repository, tag = name, DEFAULT_TAG
    return registry, repository, tag


def _container_name(container: Mapping[str, Any]) -> str:
    names = container.get('Names') or []
    if names:
        return names[0].lstrip('/')
    return container.get('Id', '')[:12]


class Watcher:
    """Periodically look for image updates of the containers of one endpoint."""

    def __init__(self, name: str, configuration: Optional[Mapping[str, Any]],
                 resolver: ImageResolver, docker=None, sink=None,
                 on_update: Optional[UpdateCallback] = None):
        self.name = name
        self.configuration = validate_watcher_configuration(configuration)
        self.resolver = resolver
        self.docker = docker or DockerClient(
            socket_path=self.configuration['socket'],
            host=self.configuration.get('host'),
            port=self.configuration['port'],
        )
        self.sink = sink
        self.on_update = on_update

        self._cycle_lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def _is_watched(self, container: Mapping[str, Any]) -> bool:
        label = (container.get('Labels') or {}).get(LABEL_WATCH)
        if label is None:
            return self.configuration['watchbydefault']
        return label.strip().lower() == 'true'

    def get_containers(self) -> List[Dict[str, Any]]:
        """Running containers eligible for watching."""
        containers = self.docker.list_containers({'status': ['running']})
        return [c for c in containers if self._is_watched(c)]

    def map_container_to_image(self, container: Mapping[str, Any]) -> ImageDescriptor:
        """Build the normalized image descriptor of a container."""
        reference = container['Image']
        details = self.docker.inspect_image(reference)
        # Containers started from an image id report it instead of a name
        if reference.startswith('sha256:') and details.get('repo_tags'):
            reference = details['repo_tags'][0]

        registry_url, repository, tag = parse_image_reference(reference)
        labels = container.get('Labels') or {}
        include_tags = labels.get(LABEL_INCLUDE_TAGS, self.configuration.get('includetags'))
        exclude_tags = labels.get(LABEL_EXCLUDE_TAGS, self.configuration.get('excludetags'))
        for pattern in (include_tags, exclude_tags):
            if pattern:
                compile_tag_filter(pattern)

        image = ImageDescriptor(
            image=repository,
            version=tag,
            registry_url=registry_url,
            version_date=details.get('created_at'),
            architecture=details.get('architecture'),
            os=details.get('os'),
            size=details.get('size'),
            is_semver=is_semver(tag),
            include_tags=include_tags or None,
            exclude_tags=exclude_tags or None,
        )
        return self.resolver.normalize_image(image)

    def watch_container(self, container: Mapping[str, Any]) -> ContainerResult:
        """Resolve one container, recording any failure in its result."""
        container_id = container.get('Id', '')
        container_name = _container_name(container)
        image = None
        try:
            image = self.map_container_to_image(container)
            resolution = self.resolver.resolve(image)
        except TagWatchError as e:
            logger.warning(f"[{self.name}] {container_name}: {e}")
            return ContainerResult(container_id, container_name, STATUS_ERROR, image=image, error=str(e))

        status = STATUS_UPDATE if resolution.new_version else STATUS_NO_UPDATE
        return ContainerResult(container_id, container_name, status,
                               image=resolution.image, new_version=resolution.new_version)

    def _watch_containers(self, containers: List[Dict[str, Any]]) -> List[ContainerResult]:
        if not containers:
            return []

        timeout = self.configuration['timeout']
        executor = ThreadPoolExecutor(
            max_workers=min(self.configuration['concurrency'], len(containers)),
            thread_name_prefix=f"watcher-{self.name}",
        )
        futures = {executor.submit(self.watch_container, c): c for c in containers}
        results = []
        collected = set()

        def collect(future):
            container = futures[future]
            collected.add(future)
            try:
                results.append(future.result())
            except Exception as e:
                logger.exception(f"[{self.name}] Unexpected error watching {_container_name(container)}")
                results.append(ContainerResult(container.get('Id', ''), _container_name(container),
                                               STATUS_ERROR, error=str(e)))

        try:
            for future in as_completed(futures, timeout=timeout):
                collect(future)
        except FuturesTimeoutError:
            logger.warning(f"[{self.name}] Watch cycle timed out after {timeout}s")
            for future, container in futures.items():
                if future in collected:
                    continue
                if future.done() and not future.cancelled():
                    collect(future)
                    continue
                future.cancel()
                results.append(ContainerResult(container.get('Id', ''), _container_name(container),
                                               STATUS_ERROR,
                                               error=f"Watch cycle timed out after {timeout}s"))
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

        return results

    def _publish(self, cycle: CycleResult) -> None:
        for result in cycle.updates:
            logger.info(
                f"[{self.name}] UPDATE AVAILABLE: {result.container_name} "
                f"{result.image.image}:{result.image.version} -> {result.new_version}"
            )
            if self.on_update:
                try:
                    self.on_update(result.image, result.new_version)
                except Exception:
                    logger.exception(f"[{self.name}] Update trigger failed for {result.container_name}")

        if self.sink is not None:
            self.sink.publish(self.name, cycle)

        logger.info(
            f"[{self.name}] Watch cycle done: {len(cycle.results)} container(s), "
            f"{len(cycle.updates)} update(s), {len(cycle.errors)} error(s)"
        )

    def watch(self) -> Optional[CycleResult]:
        """Run one watch cycle.

        Returns None when a cycle is already running; the request is dropped.
        Raises ContainerRuntimeError when containers cannot be listed.
        """
        if not self._cycle_lock.acquire(blocking=False):
            logger.warning(f"[{self.name}] Watch cycle already running, request dropped")
            return None
        try:
            started_at = datetime.now().isoformat()
            containers = self.get_containers()
            logger.info(f"[{self.name}] Checking {len(containers)} container(s)...")
            results = self._watch_containers(containers)
            cycle = CycleResult(self.name, started_at, datetime.now().isoformat(), results)
            self._publish(cycle)
            return cycle
        finally:
            self._cycle_lock.release()

    def next_delay(self, now: Optional[datetime] = None) -> float:
        """Seconds until the next scheduled cycle."""
        if self.configuration.get('interval'):
            return float(self.configuration['interval'])
        now = now or datetime.now()
        next_run = croniter(self.configuration['cron'], now).get_next(datetime)
        return max((next_run - now).total_seconds(), 0.0)

    def run_cycle(self) -> None:
        try:
            self.watch()
        except TagWatchError as e:
            logger.error(f"[{self.name}] Watch cycle failed: {e}")
        except Exception:
            logger.exception(f"[{self.name}] Unexpected error during watch cycle")

    def run_forever(self) -> None:
        if self.configuration['watchatstart']:
            self.run_cycle()
        while not self._stop.is_set():
            delay = self.next_delay()
            logger.info(f"[{self.name}] Next watch cycle in {delay:.0f} seconds")
            if self._stop.wait(delay):
                break
            self.run_cycle()
        logger.info(f"[{self.name}] Stopped")

    def start(self) -> None:
        self._stop.clear()
        self._thread = threading.Thread(target=self.run_forever, name=f"watcher-{self.name}", daemon=True)
        self._thread.start()

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
