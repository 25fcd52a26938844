#!/usr/bin/env python3
"""Configuration for the campaign engine

Configuration hierarchy:
- campaign_config: Database, cache, collaborators, dispatch and scheduler settings
- logging_config: Logging configuration
"""
import os
from dotenv import load_dotenv
from .campaign_config import CampaignEngineConfig
from .logging_config import LoggingConfig, setup_logging

# Load environment file based on ENV
env = os.getenv("ENV") or os.getenv("ENVIRONMENT", "development")
env_files = {
    "development": "deployment/environments/dev.env",
    "dev": "deployment/environments/dev.env",
    "testing": "deployment/environments/test.env",
    "test": "deployment/environments/test.env",
    "staging": "deployment/environments/staging.env",
    "production": "deployment/environments/production.env",
}
env_file = env_files.get(env, "deployment/environments/dev.env")
load_dotenv(env_file, override=False)

# Create global settings instance
settings = CampaignEngineConfig.from_env()

def get_settings() -> CampaignEngineConfig:
    """Get global settings instance"""
    return settings

def reload_settings() -> CampaignEngineConfig:
    """Reload settings from environment"""
    global settings
    settings = CampaignEngineConfig.from_env()
    return settings

__all__ = [
    'CampaignEngineConfig',
    'LoggingConfig',
    'setup_logging',
    'get_settings',
    'reload_settings',
    'settings',
]
