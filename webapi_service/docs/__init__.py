from .registrar import (
    BEARER_SECURITY_SCHEME,
    DocumentationActivation,
    DocumentationActivationState,
    DocumentationArtifactError,
    DocumentationGenerator,
    DocumentationRegistrar,
    default_artifact_path,
    load_xml_documentation,
)

__all__ = [
    "BEARER_SECURITY_SCHEME",
    "DocumentationActivation",
    "DocumentationActivationState",
    "DocumentationArtifactError",
    "DocumentationGenerator",
    "DocumentationRegistrar",
    "default_artifact_path",
    "load_xml_documentation",
]
