"""Centralized logging configuration for spec-orchestrator."""

import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional


def setup_logging(
	name: str = "spec_orchestrator",
	level: Optional[str] = None,
	log_dir: Optional[Path] = None,
) -> logging.Logger:
	"""
	Set up logging with console and file handlers.

	Args:
		name: Logger name
		level: Log level (DEBUG, INFO, WARNING, ERROR). Defaults to env var, then config.
		log_dir: Directory for log files (defaults to the configured log_dir)

	Returns:
		Configured logger
	"""
	if level is None or log_dir is None:
		from .config import get_config
		config = get_config()
		level = level or os.getenv("SPEC_ORCHESTRATOR_LOG_LEVEL") or config.log_level
		log_dir = log_dir or config.log_dir
	log_level = getattr(logging, level.upper(), logging.INFO)

	logger = logging.getLogger(name)
	logger.setLevel(log_level)

	# Avoid duplicate handlers
	if logger.handlers:
		return logger

	detailed_formatter = logging.Formatter(
		"%(asctime)s [%(levelname)s] %(name)s:%(lineno)d - %(message)s",
		datefmt="%Y-%m-%d %H:%M:%S",
	)
	simple_formatter = logging.Formatter(
		"%(asctime)s [%(levelname)s] %(message)s",
		datefmt="%H:%M:%S",
	)

	console_handler = logging.StreamHandler(sys.stderr)
	console_handler.setLevel(log_level)
	console_handler.setFormatter(simple_formatter)
	logger.addHandler(console_handler)

	log_path = Path(log_dir)
	log_path.mkdir(parents=True, exist_ok=True)

	file_handler = RotatingFileHandler(
		log_path / f"{name}.log",
		maxBytes=10 * 1024 * 1024,  # 10 MB
		backupCount=5,
	)
	file_handler.setLevel(logging.DEBUG)  # File gets all logs
	file_handler.setFormatter(detailed_formatter)
	logger.addHandler(file_handler)

	return logger
