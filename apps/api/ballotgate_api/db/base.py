"""Declarative base for control-plane models."""

from sqlalchemy.orm import declarative_base

Base = declarative_base()
