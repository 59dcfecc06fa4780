#!/usr/bin/env python3
"""
Development server runner for the Provn API
Checks environment, dependencies, ffmpeg and the database before starting uvicorn
"""

import os
import shutil
import sys
import uvicorn
from pathlib import Path

# Add the parent directory to Python path
sys.path.append(str(Path(__file__).parent.parent))

# Load environment variables from .env file
from dotenv import load_dotenv
load_dotenv()


def check_environment():
    """Check if all required environment variables are set."""
    required_vars = [
        "DB_DSN",
    ]

    optional_vars = [
        "API_HOST",
        "API_PORT",
        "DEBUG",
        "PINATA_JWT",
        "IPFS_API_URL",
        "CHAIN_RPC_URL",
        "IPNFT_CONTRACT_ADDRESS",
        "JWT_SECRET",
    ]
    secret_vars = {"PINATA_JWT", "JWT_SECRET"}

    missing_vars = [var for var in required_vars if not os.getenv(var)]
    if missing_vars:
        print(f"Missing required environment variables: {', '.join(missing_vars)}")
        print("Please check your .env file or environment configuration.")
        return False

    print("Required environment variables found")

    print("\nOptional configurations:")
    for var in optional_vars:
        value = os.getenv(var)
        if value is None:
            value = "Not set"
        elif var in secret_vars:
            value = "***"
        print(f"  {var}: {value}")

    if not os.getenv("CHAIN_RPC_URL"):
        print("  (no chain configured: minting runs in dry-run mode)")

    return True


def check_dependencies():
    """Check if all required dependencies are available."""
    required_modules = [
        "fastapi",
        "uvicorn",
        "psycopg2",
        "PIL",  # Pillow imports as PIL
        "numpy",
        "cv2",
        "requests",
        "web3",
        "eth_account",
        "jwt",
        "structlog",
    ]

    missing_modules = []
    for module in required_modules:
        try:
            __import__(module)
        except ImportError:
            missing_modules.append(module)

    if missing_modules:
        print(f"Missing required Python modules: {', '.join(missing_modules)}")
        print("Please run: pip install -e .")
        return False

    if not shutil.which("ffmpeg") or not shutil.which("ffprobe"):
        print("ffmpeg and ffprobe must be installed and on PATH")
        return False

    print("All required dependencies found")
    return True


def main():
    """Main entry point for development server."""
    print("Provn - Development Server")
    print("=" * 50)

    if not check_environment():
        sys.exit(1)

    if not check_dependencies():
        sys.exit(1)

    try:
        from provn.core.database import check_database_connection
        if check_database_connection():
            print("Database connection successful")
        else:
            print("Database connection failed")
            print("Please check your database configuration")
            sys.exit(1)
    except Exception as e:
        print(f"Database connection error: {str(e)}")
        sys.exit(1)

    from provn import config

    print("\nStarting development server...")
    print(f"   Host: {config.API_HOST}")
    print(f"   Port: {config.API_PORT}")
    print(f"   Debug: {config.DEBUG}")
    print(f"   Docs: http://{config.API_HOST}:{config.API_PORT}/docs")
    print("\nPress Ctrl+C to stop the server")
    print("=" * 50)

    try:
        uvicorn.run(
            "provn.main:app",
            host=config.API_HOST,
            port=config.API_PORT,
            reload=config.DEBUG,
            log_level="debug" if config.DEBUG else "info",
            access_log=True,
        )
    except KeyboardInterrupt:
        print("\nServer stopped by user")


if __name__ == "__main__":
    main()
