"""
Provisioning gate
- Confirms the target compute instance exists, is running and reachable
- Consulted by the orchestrator before a run; never retries resource creation
"""

import asyncio
import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol

from shipyard.core.async_utils import Deadline
from shipyard.core.exceptions import (
    ProvisionError,
    ProvisionTimeout,
    ShipyardException,
    TimeoutExceeded,
)
from shipyard.core.logging import get_logger
from shipyard.executor.step import StepExecutor

logger = get_logger(__name__)


class ResourceState(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    FAILED = "failed"


@dataclass
class InfrastructureSpec:
    name: str
    image_id: str = ""
    size_class: str = ""
    disk_gb: int = 10
    network_rules: List[Dict[str, Any]] = field(default_factory=list)
    port: int = 22

    def to_vars(self) -> Dict[str, str]:
        return {
            "name": self.name,
            "image_id": self.image_id,
            "size_class": self.size_class,
            "disk_gb": str(self.disk_gb),
            "network_rules": json.dumps(self.network_rules),
        }


@dataclass
class ResourceObservation:
    """Response of the provisioning collaborator"""
    identifier: str
    address: str = ""
    state: ResourceState = ResourceState.PENDING
    message: str = ""


@dataclass
class Endpoint:
    identifier: str
    address: str
    port: int
    ready: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "identifier": self.identifier,
            "address": self.address,
            "port": self.port,
            "ready": self.ready,
        }


class ProvisioningBackend(Protocol):
    async def describe(self, spec: InfrastructureSpec) -> Optional[ResourceObservation]: ...

    async def create(self, spec: InfrastructureSpec, timeout: Optional[float] = None) -> None: ...


async def tcp_reachable(address: str, port: int, timeout: float = 3.0) -> bool:
    """True when *address:port* accepts a TCP connection"""
    try:
        _, writer = await asyncio.wait_for(asyncio.open_connection(address, port), timeout=timeout)
    except (OSError, asyncio.TimeoutError):
        return False
    writer.close()
    try:
        await writer.wait_closed()
    except OSError:
        pass
    return True


class TerraformBackend:
    """Provisioning collaborator driven through the terraform CLI"""

    def __init__(
        self,
        working_dir: str,
        executor: Optional[StepExecutor] = None,
        binary: str = "terraform",
        id_output: str = "instance_id",
        address_output: str = "public_ip",
        state_output: str = "instance_state",
    ):
        self.working_dir = working_dir
        self.executor = executor or StepExecutor()
        self.binary = binary
        self.id_output = id_output
        self.address_output = address_output
        self.state_output = state_output

    async def describe(self, spec: InfrastructureSpec) -> Optional[ResourceObservation]:
        output = await self.executor.execute(
            [self.binary, "output", "-json"], cwd=self.working_dir, check=False, timeout=60
        )
        if not output.ok or not output.stdout.strip():
            return None

        values = {key: item.get("value") for key, item in json.loads(output.stdout).items()}
        identifier = values.get(self.id_output)
        if not identifier:
            return None

        address = values.get(self.address_output) or ""
        raw_state = str(values.get(self.state_output) or ("running" if address else "pending")).lower()
        if raw_state in ("running", "ready", "active"):
            state = ResourceState.RUNNING
        elif raw_state in ("failed", "error", "terminated"):
            state = ResourceState.FAILED
        else:
            state = ResourceState.PENDING
        return ResourceObservation(identifier=str(identifier), address=address, state=state, message=raw_state)

    async def create(self, spec: InfrastructureSpec, timeout: Optional[float] = None) -> None:
        await self.executor.execute(
            [self.binary, "init", "-input=false"], cwd=self.working_dir, timeout=timeout
        )
        command = [self.binary, "apply", "-auto-approve", "-input=false"]
        for key, value in spec.to_vars().items():
            command += ["-var", f"{key}={value}"]
        await self.executor.execute(command, cwd=self.working_dir, timeout=timeout)


class ProvisioningGate:
    """Ensures target infrastructure is ready before the orchestrator may run"""

    def __init__(
        self,
        backend: ProvisioningBackend,
        poll_interval: float = 10.0,
        timeout: float = 600.0,
        reachable: Optional[Callable[[str, int], Awaitable[bool]]] = None,
    ):
        self.backend = backend
        self.poll_interval = poll_interval
        self.timeout = timeout
        self.reachable = reachable or tcp_reachable

    async def ensure_ready(
        self,
        spec: InfrastructureSpec,
        timeout: Optional[float] = None,
        create_missing: bool = False,
    ) -> Endpoint:
        """Poll until *spec* is running and reachable.

        At most one create request is issued per call, and only with
        *create_missing*; a failed creation needs a new explicit request.

        Raises:
            ProvisionTimeout: not ready within *timeout*
            ProvisionError: the collaborator reported a terminal failure
                or its status could not be read
        """
        timeout = timeout if timeout is not None else self.timeout
        deadline = Deadline(timeout)
        create_requested = False
        last_status = "not found"

        logger.info(f"Waiting for infrastructure '{spec.name}' (timeout={timeout:g}s)")
        while True:
            observation = await self._describe(spec, timeout)

            if observation is None:
                last_status = "not found"
                if create_missing and not create_requested:
                    create_requested = True
                    logger.info(f"Requesting creation of '{spec.name}'")
                    try:
                        await self.backend.create(spec, timeout=deadline.remaining)
                    except TimeoutExceeded as e:
                        raise ProvisionTimeout(spec.name, timeout, e.message) from e
                    except ShipyardException as e:
                        raise ProvisionError(spec.name, e.detail or e.message) from e
                    continue

            elif observation.state == ResourceState.FAILED:
                raise ProvisionError(spec.name, observation.message or "collaborator reported failure")

            elif observation.state == ResourceState.RUNNING and observation.address:
                if await self.reachable(observation.address, spec.port):
                    endpoint = Endpoint(
                        identifier=observation.identifier,
                        address=observation.address,
                        port=spec.port,
                    )
                    logger.info(f"Infrastructure '{spec.name}' ready at {endpoint.address}:{endpoint.port}")
                    return endpoint
                last_status = f"running but {observation.address}:{spec.port} unreachable"

            else:
                last_status = observation.state.value

            if deadline.expired:
                raise ProvisionTimeout(spec.name, timeout, f"last status: {last_status}")
            logger.debug(f"Infrastructure '{spec.name}': {last_status}")
            await deadline.sleep(self.poll_interval)

    async def _describe(self, spec: InfrastructureSpec, timeout: float) -> Optional[ResourceObservation]:
        try:
            return await self.backend.describe(spec)
        except TimeoutExceeded as e:
            raise ProvisionTimeout(spec.name, timeout, f"describe: {e.message}") from e
        except ShipyardException as e:
            raise ProvisionError(spec.name, f"describe: {e.detail or e.message}") from e
        except Exception as e:
            raise ProvisionError(spec.name, f"describe: {type(e).__name__}: {e}") from e
