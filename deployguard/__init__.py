"""
deployguard: post-deploy health verification and backup-first rollback
for Kubernetes services and S3-hosted frontends.
"""

__version__ = '1.0.0'
