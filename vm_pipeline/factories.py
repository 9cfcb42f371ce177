from vm_pipeline.clients.control_plane import ControlPlaneClient
from vm_pipeline.clients.fake import FakeControlPlane
from vm_pipeline.clients.utm import UTMCliControlPlane, UTMScriptableControlPlane
from vm_pipeline.config import PipelineSettings
from vm_pipeline.services.pipeline import PipelineContext


def build_control_plane(settings: PipelineSettings) -> ControlPlaneClient:
    settings.validate_backend()
    if settings.backend == "fake":
        return FakeControlPlane()
    if settings.backend == "utm-cli":
        return UTMCliControlPlane(settings)
    return UTMScriptableControlPlane(settings)


def build_context(settings: PipelineSettings) -> PipelineContext:
    return PipelineContext(settings=settings, control_plane=build_control_plane(settings))
