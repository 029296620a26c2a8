# api/__init__.py
# The application lives in api.server (create_app, app).
