# Copyright 2025 Alibaba Group Holding Ltd.
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Kubernetes backend driver.

Each sandbox is a bare Pod plus a Service exposing its ports. The Pod name
doubles as the container id.
"""

import logging
import time
from typing import Any, Callable, Dict, List, Optional

from fastapi import HTTPException, status
from kubernetes import client as k8s_client
from kubernetes import config as k8s_config
from kubernetes.client import (
    ApiException,
    V1Container,
    V1ContainerPort,
    V1EnvVar,
    V1HostPathVolumeSource,
    V1ObjectMeta,
    V1Pod,
    V1PodSpec,
    V1ResourceRequirements,
    V1SecurityContext,
    V1Service,
    V1ServicePort,
    V1ServiceSpec,
    V1Volume,
    V1VolumeMount,
)

from sandbox_manager.config import KubernetesConfig
from sandbox_manager.services.constants import (
    CONTAINER_STATUS_NOT_FOUND,
    DEFAULT_PROTOCOL,
    DEFAULT_WORKDIR,
    SandboxErrorCodes,
)
from sandbox_manager.services.drivers.base import BackendDriver, ContainerCreateResult, VolumeBinding
from sandbox_manager.services.helpers import sanitize_k8s_name

logger = logging.getLogger(__name__)

APP_LABEL = "app"


def _split_port(port: str) -> tuple[int, str]:
    number, _, protocol = str(port).partition("/")
    return int(number), (protocol or "tcp").upper()


class KubernetesDriver(BackendDriver):
    """Pod based sandboxes reachable through a NodePort or LoadBalancer Service."""

    name = "kubernetes"

    def __init__(self, config: Optional[KubernetesConfig] = None, core_api: Optional[k8s_client.CoreV1Api] = None):
        self.config = config or KubernetesConfig()
        self.namespace = self.config.namespace
        if core_api is not None:
            self.core_api = core_api
            return
        try:
            if self.config.kubeconfig_path:
                k8s_config.load_kube_config(config_file=self.config.kubeconfig_path)
            else:
                try:
                    k8s_config.load_incluster_config()
                except k8s_config.ConfigException:
                    k8s_config.load_kube_config()
            self.core_api = k8s_client.CoreV1Api()
            logger.info("Kubernetes client initialized successfully")
        except Exception as e:  # noqa: BLE001
            logger.error(f"Failed to initialize Kubernetes client: {e}")
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail={
                    "code": SandboxErrorCodes.BACKEND_UNREACHABLE,
                    "message": f"Failed to initialize Kubernetes client: {str(e)}",
                },
            ) from e

    def sanitize_name(self, name: str) -> str:
        return sanitize_k8s_name(name)

    def connect(self) -> bool:
        try:
            with self._operation("list pods"):
                self.core_api.list_namespaced_pod(namespace=self.namespace, limit=1)
        except Exception as e:  # noqa: BLE001
            logger.error(f"Kubernetes API unreachable: {e}")
            return False
        return True

    def _build_container(
        self,
        name: str,
        image: str,
        ports: List[str],
        volume_bindings: List[VolumeBinding],
        environment: Dict[str, str],
        runtime_config: Dict[str, Any],
    ) -> V1Container:
        limits: Dict[str, str] = {}
        if runtime_config.get("mem_limit"):
            limits["memory"] = str(runtime_config["mem_limit"])
        if runtime_config.get("cpu"):
            limits["cpu"] = str(runtime_config["cpu"])
        if runtime_config.get("enable_gpu"):
            limits["nvidia.com/gpu"] = "1"
        security_context = V1SecurityContext(privileged=True) if runtime_config.get("privileged") else None

        container_ports = []
        for port in ports:
            number, protocol = _split_port(port)
            container_ports.append(V1ContainerPort(container_port=number, protocol=protocol))

        return V1Container(
            name=name,
            image=image,
            image_pull_policy=self.config.image_pull_policy,
            working_dir=DEFAULT_WORKDIR,
            env=[V1EnvVar(name=key, value=value) for key, value in environment.items()],
            ports=container_ports,
            volume_mounts=[
                V1VolumeMount(
                    name=f"volume-{index}",
                    mount_path=binding.container_path,
                    read_only=binding.read_only,
                )
                for index, binding in enumerate(volume_bindings)
            ],
            resources=V1ResourceRequirements(limits=limits) if limits else None,
            security_context=security_context,
        )

    def _build_service(self, name: str, ports: List[str]) -> V1Service:
        service_ports = []
        for port in ports:
            number, protocol = _split_port(port)
            service_ports.append(
                V1ServicePort(
                    name=f"port-{number}-{protocol.lower()}",
                    port=number,
                    target_port=number,
                    protocol=protocol,
                )
            )
        return V1Service(
            metadata=V1ObjectMeta(name=name, labels={APP_LABEL: name}),
            spec=V1ServiceSpec(
                type=self.config.service_type,
                selector={APP_LABEL: name},
                ports=service_ports,
            ),
        )

    def create_container(
        self,
        name: str,
        image: str,
        ports: List[str],
        volume_bindings: List[VolumeBinding],
        environment: Dict[str, str],
        runtime_config: Optional[Dict[str, Any]] = None,
    ) -> ContainerCreateResult:
        name = self.sanitize_name(name)
        container = self._build_container(
            name, image, ports, volume_bindings, environment, runtime_config or {}
        )
        pod = V1Pod(
            metadata=V1ObjectMeta(name=name, labels={APP_LABEL: name}),
            spec=V1PodSpec(
                containers=[container],
                restart_policy="Never",
                volumes=[
                    V1Volume(
                        name=f"volume-{index}",
                        host_path=V1HostPathVolumeSource(path=binding.host_path, type="DirectoryOrCreate"),
                    )
                    for index, binding in enumerate(volume_bindings)
                ]
                or None,
            ),
        )

        pod_created = False
        try:
            with self._operation("create pod", name):
                self.core_api.create_namespaced_pod(namespace=self.namespace, body=pod)
            pod_created = True
            with self._operation("create service", name):
                service = self.core_api.create_namespaced_service(
                    namespace=self.namespace,
                    body=self._build_service(name, ports),
                )
            host, exposed_ports = self._resolve_endpoint(name, service)
        except ApiException as e:
            if pod_created:
                self._delete_quietly(name)
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail={
                    "code": SandboxErrorCodes.CONTAINER_CREATION_FAILED,
                    "message": f"Failed to create pod {name}: {e.reason}",
                },
            ) from e
        except HTTPException:
            self._delete_quietly(name)
            raise

        return ContainerCreateResult(
            container_id=name,
            ports=exposed_ports,
            host=host,
            protocol=DEFAULT_PROTOCOL,
        )

    def _resolve_endpoint(self, name: str, service: V1Service) -> tuple[str, List[str]]:
        """Work out the externally reachable host and ports of a new sandbox."""
        if self.config.service_type == "LoadBalancer":
            def ingress_ready(svc: V1Service) -> bool:
                ingress = svc.status.load_balancer.ingress if svc.status and svc.status.load_balancer else None
                return bool(ingress)

            service = self._wait_for(
                name,
                lambda: self.core_api.read_namespaced_service(name=name, namespace=self.namespace),
                ingress_ready,
                "load balancer ingress",
            )
            ingress = service.status.load_balancer.ingress[0]
            return ingress.ip or ingress.hostname, [str(port.port) for port in service.spec.ports]

        pod = self._wait_for(
            name,
            lambda: self.core_api.read_namespaced_pod(name=name, namespace=self.namespace),
            lambda p: bool(p.status and p.status.host_ip),
            "node assignment",
        )
        return pod.status.host_ip, [str(port.node_port) for port in service.spec.ports]

    def _wait_for(
        self,
        name: str,
        fetch: Callable[[], Any],
        ready: Callable[[Any], bool],
        what: str,
    ) -> Any:
        """Poll ``fetch`` until ``ready`` holds or the configured timeout elapses."""
        logger.info(f"Waiting for {what} of sandbox {name} (timeout: {self.config.ready_timeout}s)")
        deadline = time.monotonic() + self.config.ready_timeout
        while time.monotonic() < deadline:
            obj = fetch()
            if ready(obj):
                return obj
            phase = getattr(getattr(obj, "status", None), "phase", None)
            if phase == "Failed":
                raise HTTPException(
                    status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                    detail={
                        "code": SandboxErrorCodes.CONTAINER_START_FAILED,
                        "message": f"Pod {name} failed while waiting for {what}.",
                    },
                )
            time.sleep(self.config.poll_interval)
        raise HTTPException(
            status_code=status.HTTP_504_GATEWAY_TIMEOUT,
            detail={
                "code": SandboxErrorCodes.K8S_POD_READY_TIMEOUT,
                "message": f"Timed out after {self.config.ready_timeout}s waiting for {what} of {name}.",
            },
        )

    def start_container(self, container_id: str) -> None:
        # Pods start on creation; wait until the sandbox process is running.
        try:
            self._wait_for(
                container_id,
                lambda: self.core_api.read_namespaced_pod(name=container_id, namespace=self.namespace),
                lambda p: bool(p.status and p.status.phase == "Running"),
                "running phase",
            )
        except ApiException as e:
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail={
                    "code": SandboxErrorCodes.CONTAINER_START_FAILED,
                    "message": f"Failed to read pod {container_id}: {e.reason}",
                },
            ) from e

    def stop_container(self, container_id: str) -> None:
        logger.debug(f"Kubernetes pods cannot be stopped; {container_id} keeps running until removed.")

    def remove_container(self, container_id: str) -> None:
        try:
            with self._operation("delete service", container_id):
                self.core_api.delete_namespaced_service(name=container_id, namespace=self.namespace)
        except ApiException as e:
            if e.status != 404:
                raise self._delete_failed(container_id, e) from e
        try:
            with self._operation("delete pod", container_id):
                self.core_api.delete_namespaced_pod(
                    name=container_id,
                    namespace=self.namespace,
                    grace_period_seconds=0,
                )
        except ApiException as e:
            if e.status != 404:
                raise self._delete_failed(container_id, e) from e

    @staticmethod
    def _delete_failed(container_id: str, e: ApiException) -> HTTPException:
        return HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={
                "code": SandboxErrorCodes.SANDBOX_DELETE_FAILED,
                "message": f"Failed to delete sandbox {container_id}: {e.reason}",
            },
        )

    def _delete_quietly(self, name: str) -> None:
        try:
            self.remove_container(name)
        except HTTPException as e:
            logger.warning(f"Failed to cleanup pod {name}: {e.detail}")

    def _read_pod(self, container_id: str) -> Optional[V1Pod]:
        try:
            return self.core_api.read_namespaced_pod(name=container_id, namespace=self.namespace)
        except ApiException as e:
            if e.status == 404:
                return None
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail={
                    "code": SandboxErrorCodes.K8S_API_ERROR,
                    "message": f"Failed to read pod {container_id}: {e.reason}",
                },
            ) from e

    def inspect_container(self, container_id: str) -> bool:
        return self._read_pod(container_id) is not None

    def get_container_status(self, container_id: str) -> str:
        pod = self._read_pod(container_id)
        if pod is None:
            return CONTAINER_STATUS_NOT_FOUND
        phase = pod.status.phase if pod.status else None
        if pod.metadata and pod.metadata.deletion_timestamp:
            return "terminating"
        return (phase or "unknown").lower()
