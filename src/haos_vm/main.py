"""Main entry point for HAOS VM provisioning."""

import logging
import tempfile
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, ContextManager, Iterator, Optional

import yaml

from haos_vm.artifact_cache import ArtifactCache
from haos_vm.config import Config
from haos_vm.extractor import ArtifactExtractor
from haos_vm.models import ConfigurationError, ProvisionRequest, ProvisionResult
from haos_vm.orchestrator import ProvisioningOrchestrator
from haos_vm.proxmox_api import ProxmoxClient
from haos_vm.storage import StorageAdapter
from haos_vm.version_resolver import VersionResolver

logger = logging.getLogger(__name__)

# Called with a phase description; yields a callback fed with progress figures
ProgressFactory = Callable[[str], ContextManager[Callable[..., None]]]


@contextmanager
def silent_progress(description: str) -> Iterator[Callable[..., None]]:
    logger.info(description)
    yield lambda *args: None


@dataclass
class Components:
    """Collaborators for one provisioning run."""

    client: ProxmoxClient
    resolver: VersionResolver
    cache: ArtifactCache
    extractor: ArtifactExtractor
    work_dir: str
    start_timeout: int = 180


def build_components(backend: Optional[str] = None, node: Optional[str] = None) -> Components:
    """Wire collaborators from Config. Only this function reads settings."""
    client = ProxmoxClient.connect(
        backend or Config.PVE_BACKEND,
        node or Config.get_node_name(),
        host=Config.PVE_HOST,
        api_token=Config.API_TOKEN,
        ssh_user=Config.SSH_USER,
        ssh_key=Config.SSH_KEY_PATH,
        verify_ssl=Config.VERIFY_SSL,
        remote_image_dir=Config.REMOTE_IMAGE_DIR,
    )
    resolver = VersionResolver(Config.METADATA_PRIMARY, Config.METADATA_FALLBACK, timeout=Config.METADATA_TIMEOUT)
    cache = ArtifactCache(
        Config.CACHE_DIR,
        Config.RELEASE_URL,
        Config.DEV_URL,
        connect_timeout=Config.CONNECT_TIMEOUT,
        transfer_timeout=Config.DOWNLOAD_TIMEOUT,
        retries=Config.DOWNLOAD_RETRIES,
        retry_delay=Config.RETRY_DELAY,
    )
    return Components(
        client=client,
        resolver=resolver,
        cache=cache,
        extractor=ArtifactExtractor(),
        work_dir=Config.WORK_DIR,
        start_timeout=Config.VM_START_TIMEOUT,
    )


def load_request(path: str, **overrides: Any) -> ProvisionRequest:
    """
    Read a provisioning request from a YAML file.

    Keys match ProvisionRequest fields; overrides that are not None win over
    the file.
    """
    try:
        with open(path) as f:
            data = yaml.safe_load(f) or {}
    except FileNotFoundError:
        raise ConfigurationError(f"Request file not found: {path}")
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in {path}: {e}")

    if not isinstance(data, dict):
        raise ConfigurationError(f"Request file {path} must contain a mapping")
    data.update({k: v for k, v in overrides.items() if v is not None})
    return ProvisionRequest.from_dict(data)


def provision(
    request: ProvisionRequest,
    components: Components,
    progress: ProgressFactory = silent_progress,
) -> ProvisionResult:
    """
    Provision one HAOS VM end to end.

    Phases run strictly in order; nothing is created on the host before the
    image is cached and decompressed. The scratch image is removed on every
    exit path.
    """
    # Phase 1: versions (stable failure aborts here, before any download)
    with progress("Retrieving Home Assistant OS version metadata"):
        versions = components.resolver.resolve_all()
    version = versions.version_for(request.channel)
    logger.info(f"HAOS {request.channel.value} version: {version}")

    # Phase 2: storage and identifier preflight
    client = components.client
    pools = StorageAdapter.parse_storage_pools(client.list_image_storages())
    pool = StorageAdapter.select_storage(pools, request.storage)
    profile = StorageAdapter.profile_for(client.storage_type(pool.name))
    orchestrator = ProvisioningOrchestrator(client, start_timeout=components.start_timeout)
    if request.vmid is not None:
        orchestrator.check_identifier(request.vmid)
    logger.info(f"Using {pool.name} ({profile.backend_type}) for storage")

    # Phase 3: artifact
    descriptor = components.cache.descriptor_for(request.channel, version)
    logger.info(f"Download URL: {descriptor.url}")
    with progress(f"Retrieving {descriptor.basename}") as advance:
        cached = components.cache.ensure(descriptor, advance)

    # Phase 4: decompress and provision
    Path(components.work_dir).mkdir(parents=True, exist_ok=True)
    with tempfile.TemporaryDirectory(prefix="haos-", dir=components.work_dir) as scratch:
        with progress(f"Decompressing {descriptor.basename}") as advance:
            image = components.extractor.extract(cached, Path(scratch) / descriptor.image_name, advance)
        result = orchestrator.provision(request, image, pool.name, profile)

    if not request.keep_cache:
        components.cache.discard(descriptor)
    return result
