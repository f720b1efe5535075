"""Thin API launcher.

This is the uvicorn entrypoint. All application logic lives in the logview package.
Run with: uvicorn main:app --reload

The app instance is created here (not in logview.app) so tests can import
create_app without a configured environment.
"""

from logview.app import add_request_id_middleware, create_app

app = create_app()
# Add request-id middleware LAST so it runs FIRST (outermost)
add_request_id_middleware(app)

__all__ = ["app"]
