#!/usr/bin/env python3

import argparse
import json
import logging
import os
import platform
import signal
import subprocess
import sys

import requests
from termcolor import colored


API_URL = "https://api.openai.com/v1/chat/completions"
DEFAULT_MODEL = "gpt-3.5-turbo"
SHELL_TAG = "[shell]"
OS_NAMES = {"win32": "windows", "cygwin": "windows", "darwin": "macos"}
SHELLS = {"windows": "powershell", "macos": "zsh"}
DEFAULT_SHELL = "bash"

logger = logging.getLogger("gptshell")


def env_float(name):
    value = os.getenv(name)
    if not value:
        return None
    try:
        return float(value)
    except ValueError:
        return None


def parse_args(argv=None):
    parser = argparse.ArgumentParser(
        prog="gptshell",
        description=(
            "Chat with the OpenAI API from the terminal. Provide a prompt for one-shot mode, "
            "or run without a prompt to start interactive mode. Answers tagged as shell "
            "commands are run after confirmation."
        ),
    )
    parser.add_argument("prompt", nargs="*", help="Prompt text.")
    parser.add_argument(
        "-k",
        "--key",
        default=os.getenv("OPENAI_API_KEY"),
        help="API key. Defaults to OPENAI_API_KEY.",
    )
    parser.add_argument(
        "-m",
        "--model",
        default=os.getenv("OPENAI_MODEL", DEFAULT_MODEL),
        help=f"Model name (default: {DEFAULT_MODEL})",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=env_float("OPENAI_TIMEOUT"),
        help="Request timeout in seconds. Waits indefinitely when unset.",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Log request and execution details to stderr.",
    )
    return parser.parse_args(argv)


def configure_logging(verbose):
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )


def current_os():
    if sys.platform in OS_NAMES:
        return OS_NAMES[sys.platform]
    return platform.system().lower() or sys.platform


def resolve_shell(os_name):
    return SHELLS.get(os_name, DEFAULT_SHELL)


def shell_invocation(shell, command):
    flag = "-Command" if shell == "powershell" else "-c"
    return [shell, flag, command]


def system_message(shell=None, os_name=None):
    os_name = os_name or current_os()
    shell = shell or resolve_shell(os_name)
    return (
        f"You are both an AI assistant and a natural language to {shell} command translation "
        f"engine on {os_name}.\n"
        "If the prompt is asking a general question, you should respond with a helpful and "
        "accurate answer as you would normally.\n"
        "If you don't understand the prompt, simply explain why.\n"
        "\n"
        "If the prompt is something that can be accomplished with a shell command, such as "
        "creating directories/files, changing directories, downloading files, sending requests, "
        "changing OS settings, running programs, editing files, etc., then you should output a "
        f"single {shell} command that can accomplish the task, preceded by \"{SHELL_TAG}\" to "
        "mark it as a shell command.\n"
        "\n"
        f"Here are the rules for generating {shell} commands:\n"
        "Always use only one line; you can always chain multiple commands on a single line.\n"
        "Never use multiple commands on separate lines. Always use semicolons or \"&&\" to chain "
        "multiple commands on a single line.\n"
        "Never use comments.\n"
        "Never put introductory statements such as \"Here's a command to do ...\" or \"To do "
        "this, run ...\", etc. Just put the command itself and nothing else (except for the "
        f"\"{SHELL_TAG}\" tag).\n"
        "Never use placeholder file paths like \"C:\\Path\\To\\Directory\\\" or "
        "\"/path/to/file\". Instead, assume that paths are relative to the current working "
        "directory.\n"
        f"Always use valid syntax for {shell}.\n"
        f"Always make sure the command will work properly on {os_name}.\n"
        "Always use file paths that are relative to the current working directory unless "
        "otherwise specified.\n"
        "Always assume that the command will be executed as-is and without modification "
        f"(except that the \"{SHELL_TAG}\" tag at the beginning will be removed before "
        "executing).\n"
        "Never add unnecessary text or details to the answer.\n"
        "Always use plain text; no html, markdown, or other styled or colored text.\n"
        "Never paraphrase the question/prompt or restate the prompt in the answer; output only "
        f"the shell command itself (and the preceding \"{SHELL_TAG}\" tag).\n"
        "Always make the command as concise and optimized as possible.\n"
        "\n"
        "It is extremely important that you never break these rules under any circumstances, "
        "with absolutely no exceptions whatsoever."
    )


def message(role, content):
    return {"role": role, "content": content}


def build_headers(api_key):
    value = f"Bearer {api_key}"
    try:
        if api_key != api_key.strip():
            raise requests.exceptions.InvalidHeader("surrounding whitespace")
        value.encode("latin-1")
        requests.utils.check_header_validity(("Authorization", value))
    except (UnicodeEncodeError, requests.exceptions.InvalidHeader):
        # Keep the key out of the error message.
        raise ValueError("API key is not a valid HTTP header value.") from None
    return {"Authorization": value, "Content-Type": "application/json"}


def create_session(api_key):
    session = requests.Session()
    session.headers.update(build_headers(api_key))
    return session


def extract_content(data):
    try:
        content = data["choices"][0]["message"]["content"]
    except (KeyError, IndexError, TypeError):
        return None
    if not isinstance(content, str):
        return None
    return content


def chat_completion(session, model, messages, timeout=None):
    # A body without choices[0].message.content is returned as-is for the caller to report.
    payload = {"model": model, "messages": list(messages)}
    logger.debug("POST %s model=%s messages=%d", API_URL, model, len(payload["messages"]))

    response = session.post(API_URL, json=payload, timeout=timeout)
    logger.debug("Response status %s", response.status_code)
    data = response.json()

    content = extract_content(data)
    if content is None:
        return data
    return content


def report_provider_error(data):
    print(
        f"OpenAI returned an error:\n{json.dumps(data, indent=2, ensure_ascii=False)}",
        file=sys.stderr,
    )


def parse_command(output):
    text = output.strip()
    if not text.startswith(SHELL_TAG):
        return None
    return text[len(SHELL_TAG):].strip()


def confirm(prompt):
    try:
        answer = input(f"{prompt} [y/N] ").strip().lower()
    except EOFError:
        print()
        return False
    return answer in {"y", "yes"}


def run_command(shell, command):
    argv = shell_invocation(shell, command)
    logger.debug("Executing with %s", argv[0])
    try:
        completed = subprocess.run(argv, check=False)
    except OSError as exc:
        logger.debug("Could not start %s: %s", argv[0], exc)
        return
    logger.debug("Command exited with code %s", completed.returncode)


def handle_output(output, shell):
    command = parse_command(output)
    if command is None:
        print(colored(output, "green"))
        return

    print(colored(command, "green"))
    if confirm("Run command?"):
        run_command(shell, command)


def prompt_from_args(args):
    return " ".join(args.prompt)


def run_one_shot(args, session, prompt, shell):
    messages = (
        message("system", system_message(shell=shell)),
        message("user", prompt),
    )
    output = chat_completion(session, args.model, messages, timeout=args.timeout)
    if isinstance(output, str):
        handle_output(output, shell)
    else:
        report_provider_error(output)


def read_prompt():
    while True:
        user_input = input("? ").strip()
        if user_input:
            return user_input


def run_interactive(args, session, shell):
    committed = (message("system", system_message(shell=shell)),)

    while True:
        try:
            user_input = read_prompt()
        except EOFError:
            print()
            return committed

        working = committed + (message("user", user_input),)
        try:
            output = chat_completion(session, args.model, working, timeout=args.timeout)
        except requests.RequestException as exc:
            print(f"Request error: {exc}", file=sys.stderr)
            continue

        if not isinstance(output, str):
            report_provider_error(output)
            continue

        handle_output(output, shell)
        committed = working + (message("assistant", output),)


def handle_interrupt(signum, frame):
    os._exit(0)


def install_interrupt_handler():
    try:
        signal.signal(signal.SIGINT, handle_interrupt)
    except (ValueError, OSError) as exc:
        raise ValueError(f"Could not install interrupt handler: {exc}") from exc


def main(argv=None):
    args = parse_args(argv)
    configure_logging(args.verbose)
    prompt = prompt_from_args(args)

    if not args.key:
        print(
            "Missing API key. Set OPENAI_API_KEY or pass --key.",
            file=sys.stderr,
        )
        sys.exit(2)

    try:
        session = create_session(args.key)
        install_interrupt_handler()
    except ValueError as exc:
        print(exc, file=sys.stderr)
        sys.exit(2)

    shell = resolve_shell(current_os())

    if args.prompt:
        try:
            run_one_shot(args, session, prompt, shell)
        except requests.RequestException as exc:
            print(f"Request error: {exc}", file=sys.stderr)
            sys.exit(1)
        return

    run_interactive(args, session, shell)


if __name__ == "__main__":
    main()
