#deploy_engine\templates\wordpress.py

"""WordPress application template."""

from deploy_engine.templates.models import ComposeTemplate


WORDPRESS_COMPOSE = """\
services:
  db:
    image: mysql:8.0
    restart: always
    environment:
      MYSQL_DATABASE: ${WORDPRESS_DB_NAME:-wordpress}
      MYSQL_USER: ${WORDPRESS_DB_USER:-wordpress}
      MYSQL_PASSWORD: ${WORDPRESS_DB_PASSWORD:-changeme}
      MYSQL_RANDOM_ROOT_PASSWORD: "1"
    volumes:
      - db_data:/var/lib/mysql
    healthcheck:
      test: ["CMD", "mysqladmin", "ping", "-h", "localhost"]
      interval: 5s
      timeout: 3s
      retries: 10
      start_period: 10s

  wordpress:
    image: wordpress:${WORDPRESS_VERSION:-6.4-apache}
    restart: always
    depends_on:
      db:
        condition: service_healthy
    ports:
      - "${EXPOSED_PORT:-8080}:80"
    environment:
      WORDPRESS_DB_HOST: db:3306
      WORDPRESS_DB_NAME: ${WORDPRESS_DB_NAME:-wordpress}
      WORDPRESS_DB_USER: ${WORDPRESS_DB_USER:-wordpress}
      WORDPRESS_DB_PASSWORD: ${WORDPRESS_DB_PASSWORD:-changeme}
    volumes:
      - wp_data:/var/www/html
    labels:
      app: wordpress

volumes:
  db_data: {}
  wp_data: {}
"""


WORDPRESS_TEMPLATE = ComposeTemplate(
    template_id="wordpress",
    name="WordPress",
    description="The world's most popular CMS platform for blogs and websites",
    version="6.4",
    category="cms",
    compose_source=WORDPRESS_COMPOSE,
    default_environment={
        "WORDPRESS_VERSION": "6.4-apache",
        "EXPOSED_PORT": "8080",
        "WORDPRESS_DB_NAME": "wordpress",
        "WORDPRESS_DB_USER": "wordpress",
    },
)
