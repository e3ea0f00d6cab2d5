"""Kubernetes event recording for Bundles.

Events are best-effort: a failure to record one is reported on the
console and never interrupts a reconcile.
"""

from datetime import datetime, timezone

from icecream import ic
from kubernetes import client
from kubernetes.client.exceptions import ApiException
from urllib3.exceptions import HTTPError

from trust_sync import console
from trust_sync.models import API_GROUP, API_VERSION, BUNDLE_KIND, Bundle

EVENT_TYPE_NORMAL = "Normal"
EVENT_TYPE_WARNING = "Warning"

# Events for cluster-scoped objects live in the default namespace
_EVENT_NAMESPACE = "default"


class EventRecorder:
    """Records events against Bundle resources.

    Attributes:
        component: Reported as the event source.

    """

    def __init__(self, core_v1_api: client.CoreV1Api, component: str = "trust-sync") -> None:
        self._core_v1_api = core_v1_api
        self.component = component

    def normal(self, bundle: Bundle, reason: str, message: str) -> None:
        console.step(f"{console.highlight(bundle.name)} {reason}: {message}")
        self._record(bundle, EVENT_TYPE_NORMAL, reason, message)

    def warning(self, bundle: Bundle, reason: str, message: str) -> None:
        console.warning(f"{console.highlight(bundle.name)} {reason}: {message}")
        self._record(bundle, EVENT_TYPE_WARNING, reason, message)

    def _record(self, bundle: Bundle, event_type: str, reason: str, message: str) -> None:
        now = datetime.now(timezone.utc)
        event = client.CoreV1Event(
            metadata=client.V1ObjectMeta(generate_name=f"{bundle.name}."),
            involved_object=client.V1ObjectReference(
                api_version=f"{API_GROUP}/{API_VERSION}",
                kind=BUNDLE_KIND,
                name=bundle.name,
                uid=bundle.uid,
            ),
            reason=reason,
            message=message,
            type=event_type,
            source=client.V1EventSource(component=self.component),
            first_timestamp=now,
            last_timestamp=now,
            count=1,
        )
        ic(event_type, reason)

        try:
            self._core_v1_api.create_namespaced_event(_EVENT_NAMESPACE, event)
        except (ApiException, HTTPError) as e:
            console.warning(f"Failed to record {reason} event for Bundle {bundle.name}: {e}")
