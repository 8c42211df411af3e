"""OpenAPI configuration for Swagger UI."""
from fastapi import FastAPI
from fastapi.openapi.utils import get_openapi


def setup_openapi(app: FastAPI, *, identity_header: str) -> None:
    """
    Configure the OpenAPI schema with the service's security schemes.

    Runner endpoints require X-Admin-Key; job endpoints require the caller
    identity header. The purge endpoint authenticates with a body secret.

    Args:
        app: The FastAPI application instance
        identity_header: Name of the caller identity header
    """
    def custom_openapi():
        if app.openapi_schema:
            return app.openapi_schema

        openapi_schema = get_openapi(
            title=app.title,
            version=app.version,
            description=app.description,
            routes=app.routes,
        )

        openapi_schema.setdefault("components", {})["securitySchemes"] = {
            "X-Admin-Key": {
                "type": "apiKey",
                "in": "header",
                "name": "X-Admin-Key",
                "description": "Admin API Key for the runner endpoint",
            },
            "Identity": {
                "type": "apiKey",
                "in": "header",
                "name": identity_header,
                "description": "Owner id of the caller, set by the identity layer",
            },
        }

        for path, path_item in openapi_schema.get("paths", {}).items():
            if not path.startswith("/auto-sync/") or path.startswith("/auto-sync/admin/"):
                continue
            scheme = "X-Admin-Key" if path.startswith("/auto-sync/runner/") else "Identity"
            for method, operation in path_item.items():
                if method in ["get", "post", "delete", "put", "patch"]:
                    operation["security"] = [{scheme: []}]

        app.openapi_schema = openapi_schema
        return app.openapi_schema

    app.openapi = custom_openapi
