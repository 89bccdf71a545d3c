# deploy_engine/templates/nginx.py
"""Nginx application template - Simple static web server."""

from deploy_engine.templates.models import ComposeTemplate


NGINX_COMPOSE = """\
services:
  web:
    image: nginx:${NGINX_VERSION:-alpine}
    restart: always
    ports:
      - "${EXPOSED_PORT:-8080}:80"
    volumes:
      - html:/usr/share/nginx/html:ro
    labels:
      app: nginx
    healthcheck:
      test: ["CMD", "wget", "-q", "--spider", "http://localhost/"]
      interval: 10s
      timeout: 5s
      retries: 3
      start_period: 5s

volumes:
  html: {}
"""


NGINX_TEMPLATE = ComposeTemplate(
    template_id="nginx",
    name="Nginx Web Server",
    description="Lightweight web server for serving static content",
    version="1.0",
    category="web",
    compose_source=NGINX_COMPOSE,
    default_environment={
        "NGINX_VERSION": "alpine",
        "EXPOSED_PORT": "8080",
    },
)
