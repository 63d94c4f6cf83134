import argparse
import atexit
import ctypes.util
import os
import shutil
import socket
import subprocess
import sys
import time

import psutil
from colorama import Fore, Style, init
from dotenv import find_dotenv, set_key
from web3 import Web3

from .config import Settings
from .errors import VeriDocError
from .hashing import add_0x_prefix, sha256_hex


# --- Configuration ---
class Config:
    FLASK_MODULE = "veridoc.app"
    FLASK_HOST = os.environ.get("FLASK_HOST", "127.0.0.1")
    FLASK_PORT = int(os.environ.get("FLASK_PORT", 5000))
    PID_FILE = ".veridoc.pid"


init(autoreset=True)


# --- Output ---
def log_step(message, icon="==>"):
    print(f"\n{Fore.CYAN}{Style.BRIGHT}{icon} {message}{Style.RESET_ALL}")


def log_success(message):
    print(f"{Fore.GREEN}  ok  {message}{Style.RESET_ALL}")


def log_error(message):
    print(f"{Fore.RED}{Style.BRIGHT}[!] ERROR: {message}{Style.RESET_ALL}")


def log_info(message):
    print(f"{Fore.YELLOW}      {message}{Style.RESET_ALL}")


# --- Server process ---
server_pid = None


def stop_process(pid, grace=5):
    """Terminates a process and its children, killing whatever ignores SIGTERM."""
    try:
        proc = psutil.Process(pid)
    except psutil.NoSuchProcess:
        return False
    family = proc.children(recursive=True) + [proc]
    for member in family:
        try:
            member.terminate()
        except psutil.NoSuchProcess:
            pass
    _, alive = psutil.wait_procs(family, timeout=grace)
    for member in alive:
        log_error(f"PID {member.pid} ignored SIGTERM, killing it.")
        member.kill()
    return True


def shutdown_server():
    global server_pid
    if server_pid is None:
        return
    log_step("Stopping the VeriDoc server...", "<==")
    if stop_process(server_pid):
        log_success(f"Server (PID {server_pid}) stopped.")
    server_pid = None
    if os.path.exists(Config.PID_FILE):
        os.remove(Config.PID_FILE)


atexit.register(shutdown_server)


def recorded_pid():
    if not os.path.exists(Config.PID_FILE):
        return None
    with open(Config.PID_FILE) as f:
        content = f.read().strip()
    return int(content) if content.isdigit() else None


# --- Environment checks ---
def check_command_exists(cmd, install_info):
    if not shutil.which(cmd):
        log_error(f"'{cmd}' is not on PATH.")
        log_info(install_info)
        return False
    return True


def check_library_exists(name, install_info):
    if not ctypes.util.find_library(name):
        log_error(f"Shared library '{name}' was not found.")
        log_info(install_info)
        return False
    return True


def wait_for_port(port, host=Config.FLASK_HOST, timeout=30.0):
    """Blocks until something accepts connections on host:port."""
    log_info(f"Waiting for {host}:{port} to accept connections...")
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        try:
            with socket.create_connection((host, port), timeout=1.0):
                log_success(f"{host}:{port} is accepting connections.")
                return
        except OSError:
            time.sleep(0.5)
    log_error(f"Nothing listening on {host}:{port} after {timeout:.0f}s.")
    raise TimeoutError(f"{host}:{port} not reachable")


# --- Main Handlers ---
def handle_check(args):
    """Check for system dependencies needed by OCR and QR decoding."""
    log_step("Checking system dependencies...", "[?]")
    all_ok = True
    all_ok &= check_command_exists("tesseract", "apt install tesseract-ocr, or brew install tesseract")
    all_ok &= check_library_exists("zbar", "apt install libzbar0, or brew install zbar")
    if not all_ok:
        return 1
    log_success("Tesseract and zbar are available.")

    settings = Settings.from_env()
    log_info(f"Network: {settings.network.name} (chain id {settings.network.chain_id})")
    log_info(f"Contract address: {settings.contract_address or 'not set'}")
    log_info(f"Signer key: {'set' if settings.signer_private_key else 'not set'}")
    log_info(f"Vision fallback: {'enabled' if settings.vision.enabled else 'disabled'}")
    return 0


def handle_hash(args):
    """Print the SHA-256 and bytes32 forms of a text, or the fingerprint of a PDF."""
    settings = Settings.from_env()
    if args.file:
        from .fingerprint import fingerprint_document

        with open(args.file, 'rb') as f:
            fingerprint = fingerprint_document(f.read(), settings.fingerprint)
        digest = fingerprint.content_hash
        log_info(f"Method: {fingerprint.method}, confidence {fingerprint.confidence:.1f}")
    else:
        text = args.text if args.text is not None else input("Enter text to hash: ")
        digest = sha256_hex(text)

    log_step("Generated SHA256 Hash:", "[#]")
    print(digest)
    log_step("Bytes32 Formatted Hash:", "[#]")
    print(add_0x_prefix(digest))
    log_info(f"Hash length (with 0x): {len(add_0x_prefix(digest))}")
    return 0


def handle_chain_info(args):
    """Connection test: network, latest block, signer balance, contract state."""
    from .chain import ChainClient

    log_step("Testing connection to the blockchain...")
    settings = Settings.from_env()
    client = ChainClient.connect(settings)
    status = client.status()
    log_success(f"Connected to {status['network']} (chain id {status['chain_id']})")
    log_info(f"Latest block number: {status['block_number']}")
    log_info(f"Contract: {status['contract_address']}")
    log_info(f"Contract owner: {status['owner']}")
    log_info(f"Total certificates: {status['total_certificates']}")
    if client.signer:
        balance = client.w3.eth.get_balance(client.signer.address)
        log_info(f"Signer {client.signer.address} balance: {Web3.from_wei(balance, 'ether')} ETH")
    else:
        log_info("No signer key configured; read-only access.")
    return 0


def handle_set_contract(args):
    """Write CONTRACT_ADDRESS into the .env file."""
    log_step("Recording the contract address...", "[*]")
    if not Web3.is_address(args.address):
        log_error(f"'{args.address}' is not a valid address.")
        return 1
    dotenv_path = find_dotenv(usecwd=True)
    if not dotenv_path:
        log_info("Creating .env in the current directory.")
        dotenv_path = ".env"
        open(dotenv_path, 'a').close()
    set_key(dotenv_path, "CONTRACT_ADDRESS", Web3.to_checksum_address(args.address))
    log_success(f"CONTRACT_ADDRESS written to {os.path.basename(dotenv_path)}")
    return 0


def handle_flush_outbox(args):
    """Replay certificate records queued after failed database writes."""
    from .app import create_app, services

    log_step("Flushing certificate outbox...")
    app = create_app(connect_chain=False)
    with app.app_context():
        summary = services().store.flush_outbox()
    log_success(f"Processed {summary['processed']}, remaining {summary['remaining']}, dropped {summary['dropped']}.")
    return 0 if summary['dropped'] == 0 else 1


def handle_serve(args):
    """Run the Flask application until Ctrl+C."""
    global server_pid
    existing = recorded_pid()
    if existing and psutil.pid_exists(existing):
        log_error(f"A server is already recorded as running (PID {existing}). Run 'reset' first.")
        return 1

    log_step(f"Launching {Config.FLASK_MODULE} on {Config.FLASK_HOST}:{Config.FLASK_PORT}...")
    try:
        server = subprocess.Popen([sys.executable, "-m", Config.FLASK_MODULE], env=os.environ.copy())
    except OSError as e:
        log_error(f"Could not launch the server: {e}")
        return 1
    server_pid = server.pid
    with open(Config.PID_FILE, "w") as f:
        f.write(str(server.pid))

    try:
        wait_for_port(Config.FLASK_PORT, host=Config.FLASK_HOST)
    except TimeoutError:
        return 1
    log_step(f"VeriDoc API ready at http://{Config.FLASK_HOST}:{Config.FLASK_PORT}", "[OK]")
    print(f"{Fore.YELLOW}Ctrl+C stops the server.")
    try:
        server.wait()
    except KeyboardInterrupt:
        pass
    return 0


def handle_reset(args):
    """Stop a recorded server and optionally empty the outbox."""
    log_step("Resetting local state...", "[~]")
    pid = recorded_pid()
    if pid is None:
        log_info("No server PID recorded.")
    elif not psutil.pid_exists(pid):
        log_info(f"Recorded server PID {pid} is gone.")
    else:
        try:
            cmdline = " ".join(psutil.Process(pid).cmdline())
        except psutil.NoSuchProcess:
            cmdline = ""
        if Config.FLASK_MODULE in cmdline:
            stop_process(pid)
            log_success(f"Stopped server PID {pid}.")
        else:
            log_error(f"PID {pid} is not a VeriDoc server, leaving it alone.")
    if os.path.exists(Config.PID_FILE):
        os.remove(Config.PID_FILE)

    if args.clear_outbox:
        from .outbox import Outbox

        settings = Settings.from_env()
        cleared = Outbox(settings.outbox_path).clear()
        log_info(f"Removed {cleared} queued certificate record(s).")
    log_success("Reset complete.")
    return 0


def build_parser():
    parser = argparse.ArgumentParser(description="Management script for VeriDoc.",
                                     formatter_class=argparse.RawTextHelpFormatter)
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("check", help="Check system dependencies and configuration.").set_defaults(func=handle_check)

    hash_parser = subparsers.add_parser("hash", help="Hash a text, or fingerprint a PDF with --file.")
    hash_parser.add_argument("text", nargs="?", help="Text to hash (prompted when omitted).")
    hash_parser.add_argument("--file", help="PDF certificate to fingerprint.")
    hash_parser.set_defaults(func=handle_hash)

    subparsers.add_parser("chain-info", help="Test the blockchain connection and contract.").set_defaults(func=handle_chain_info)

    contract_parser = subparsers.add_parser("set-contract", help="Store the deployed contract address in .env.")
    contract_parser.add_argument("address")
    contract_parser.set_defaults(func=handle_set_contract)

    subparsers.add_parser("flush-outbox", help="Replay queued certificate records.").set_defaults(func=handle_flush_outbox)
    subparsers.add_parser("serve", help="Start the Flask application.").set_defaults(func=handle_serve)

    reset_parser = subparsers.add_parser("reset", help="Stop services and clean the environment.")
    reset_parser.add_argument("--clear-outbox", action="store_true", help="Also drop queued certificate records.")
    reset_parser.set_defaults(func=handle_reset)
    return parser


def main(argv=None):
    args = build_parser().parse_args(argv)
    try:
        return args.func(args)
    except VeriDocError as e:
        log_error(e.message)
        return 1


if __name__ == "__main__":
    sys.exit(main())
