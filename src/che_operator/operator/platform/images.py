from typing import Dict, Optional

from ...crds.checluster import CheCluster

# CR field overriding the default image of each component
IMAGE_OVERRIDES = {
    "che_server": "server.cheImage",
    "dashboard": "server.dashboardImage",
    "plugin_registry": "server.pluginRegistryImage",
    "devfile_registry": "server.devfileRegistryImage",
    "postgres": "database.postgresImage",
    "keycloak": "auth.identityProviderImage",
    "single_host_gateway": "server.singleHostGatewayImage",
    "single_host_gateway_config_sidecar": "server.singleHostGatewayConfigSidecarImage",
}


def split_image(image: str) -> Dict[str, str]:
    """Splits ``repo:tag`` taking registry ports and digests into account."""
    if "@" in image:
        repo, digest = image.split("@", 1)
        return {"repository": repo, "tag": "", "digest": digest}
    last = image.rsplit("/", 1)[-1]
    if ":" in last:
        repo, tag = image.rsplit(":", 1)
        return {"repository": repo, "tag": tag, "digest": ""}
    return {"repository": image, "tag": "", "digest": ""}


def default_image_tag(images: Dict[str, str], component: str) -> str:
    return split_image(images.get(component, ""))["tag"] or "latest"


def resolve_image(
    images: Dict[str, str], checluster: Optional[CheCluster], component: str
) -> str:
    """
    Image of a managed component: the CR override when set, else the default
    read from the operator environment at startup.
    """
    default = images[component]
    if checluster is None:
        return default
    override_path = IMAGE_OVERRIDES.get(component)
    override = checluster.value(override_path, "") if override_path else ""
    if component == "che_server":
        tag = checluster.value("server.cheImageTag", "")
        if override:
            return f"{override}:{tag}" if tag and ":" not in override.rsplit("/", 1)[-1] else override
        if tag:
            return f"{split_image(default)['repository']}:{tag}"
    return override or default
