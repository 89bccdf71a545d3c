"""Application templates."""

from .wordpress import WORDPRESS_TEMPLATE
from .nginx import NGINX_TEMPLATE


__all__ = ["WORDPRESS_TEMPLATE", "NGINX_TEMPLATE"]
