import argparse
import sys

from .kernel import run_kernel


def _parse_args(argv: list[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="ipyv", description="Jupyter kernel for the V language")
    parser.add_argument("connection_file", nargs="?", help="Path to the kernel connection file")
    parser.add_argument("-f", "--connection-file", dest="connection_file_opt", help="Path to the kernel connection file")
    args = parser.parse_args(argv)
    if args.connection_file and args.connection_file_opt:
        parser.error("give the connection file once, either positionally or with -f")
    args.connection_file = args.connection_file or args.connection_file_opt
    if not args.connection_file: parser.error("a connection file is required")
    return args


def main() -> None:
    argv = sys.argv[1:]
    if argv and argv[0] == "run": argv = argv[1:]
    run_kernel(_parse_args(argv).connection_file)


if __name__ == "__main__":
    main()
