"""
Run the Scenario Playbook Engine API with uvicorn.

Usage:
    python run.py
    python run.py --reload          # Development mode with auto-reload
    python run.py --memory          # In-process store, no MongoDB needed
    python run.py --no-scheduler    # Leave timeout sweeps to another process
"""
import argparse
import os
import uvicorn


def main():
    parser = argparse.ArgumentParser(description="Run the Scenario Playbook Engine API server")
    parser.add_argument("--host", type=str, default="127.0.0.1", help="Host to bind to (default: 127.0.0.1)")
    parser.add_argument("--port", type=int, default=8000, help="Port to bind to (default: 8000)")
    parser.add_argument("--reload", action="store_true", help="Enable auto-reload for development")
    parser.add_argument(
        "--memory",
        action="store_true",
        help="Use the in-process store instead of MongoDB (state is lost on exit)"
    )
    parser.add_argument(
        "--no-scheduler",
        action="store_true",
        help="Do not run the timeout / recovery sweeps in this process"
    )

    args = parser.parse_args()

    # Settings are read from the environment when the app module is imported
    if args.memory:
        os.environ["PERSISTENCE_BACKEND"] = "memory"
    if args.no_scheduler:
        os.environ["SCHEDULER_ENABLED"] = "false"

    print("Starting Scenario Playbook Engine API server...")
    print(f"  Host: {args.host}")
    print(f"  Port: {args.port}")
    print(f"  Reload: {args.reload}")
    print(f"  Store: {'memory' if args.memory else 'mongo'}")
    print()

    # One worker: runs started in memory mode live in this process only
    uvicorn.run(
        "playbook_engine.main:app",
        host=args.host,
        port=args.port,
        reload=args.reload,
        workers=1
    )


if __name__ == "__main__":
    main()
