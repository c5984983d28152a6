"""
n8n-stack - Operations toolkit for a docker-compose n8n deployment

Wraps the stack (n8n, PostgreSQL, Cloudflare tunnel) with:
- Encrypted, integrity-checked backups with retention
- Guarded interactive restore of database, data volume and config
- Release checks and in-place updates from GitHub
"""

__version__ = "0.1.0"
__package_name__ = "n8n-stack"
__short_name__ = "n8n-stack"
