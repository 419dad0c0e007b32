"""Deployer — release lifecycle, encrypted secrets and database provisioning for one host."""

__version__ = "0.3.0"
