"""
OpenSocial Application Layer

This package implements the web application layer for the OpenSocial API, handling HTTP
requests and responses using the aiohttp framework.

Key Components:
- cli.py: Entry point for running the application
- server.py: Web server configuration and middleware setup
- config.py: Configuration management using Pydantic settings
- session.py: Encrypted browser session cookie
- errors.py: Error taxonomy mapped to JSON responses
- handlers/: Request handlers for the different endpoints
- cors.py: CORS handling for the frontend origin
- util/: Key generation utilities

The application uses several middleware layers:
- CORS middleware for the credentialed frontend origin
- Session middleware that applies pending cookie writes to responses
- Error middleware that renders the error taxonomy as JSON
- Statsd middleware for metrics collection
- Sentry middleware for error reporting
"""
