#!/usr/bin/env python3

"""
Chat with Ollama and Open WebUI servers through plain text conversation
documents. Meant to be driven by a text editor (the editor owns the buffer
and runs the transport asynchronously), but also usable as a command line
tool and as a Vim-friendly stdin/stdout filter.

A conversation document looks like this:

    Server Type: Ollama
    Server URL: http://localhost:11434
    Model ID: qwen:latest
    *** ENDSETUP ***

    >>> How are you today?
    <<<

    =>> I'm fine, thanks.
    <<=
"""

import argparse
import collections.abc
import dataclasses
import enum
import json
import os
import os.path
import re
import subprocess
import sys
import tempfile
import time
import typing


SETTINGS_FILE_NAME = os.path.expanduser(
    os.getenv("LLMCHAT_SETTINGS", os.path.join("~", ".llmchat.json"))
)

AUTH_TOKEN_ENV_VAR = "LLMCHAT_AUTH_TOKEN"

# Resolved in place of a token when no Authorization header is to be sent.
NO_AUTH_TOKEN = "-"

REASONING_LEVELS = ("low", "medium", "high")


def main(argv):
    parser = argparse.ArgumentParser(
        prog="llmchat",
        description="Chat with Ollama and Open WebUI servers via text documents.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    new_parser = subparsers.add_parser(
        "new",
        help="Print an empty chat document."
    )
    new_parser.add_argument("--server-type", default="Ollama")
    new_parser.add_argument("--server-url", default="http://localhost:11434")
    new_parser.add_argument("--model-id", default="llama3.2:latest")

    check_parser = subparsers.add_parser(
        "check",
        help="Parse a chat document and report problems."
    )
    check_parser.add_argument("file", help="Chat document.")
    check_parser.add_argument(
        "--header-only",
        action="store_true",
        help="Validate the header only, ignore the messages.",
    )

    payload_parser = subparsers.add_parser(
        "payload",
        help="Print the request body that would be sent for a chat document."
    )
    payload_parser.add_argument("file", help="Chat document.")

    send_parser = subparsers.add_parser(
        "send",
        help="Send a chat document and append the reply to it."
    )
    send_parser.add_argument("file", help="Chat document.")

    subparsers.add_parser(
        "stdio",
        help="Read a chat document from stdin, output it with the reply to stdout."
    )

    parsed_argv = parser.parse_args(argv[1:])
    settings = load_settings()

    if parsed_argv.command == "new":
        lines = new_chat_document(
            parsed_argv.server_type,
            parsed_argv.server_url,
            parsed_argv.model_id,
        )
        print("\n".join(lines))

        return 0

    if parsed_argv.command == "stdio":
        return run_stdio(settings)

    try:
        if parsed_argv.command == "check":
            document = TextDocument.from_file(parsed_argv.file)
            model = parse_document(
                document.read_lines(),
                header_only=parsed_argv.header_only,
            )
            header = model.header
            info(
                f"OK: {header.server_type.value} {header.server_url} "
                f"{header.model_id}, {len(model.messages)} exchange(s)"
            )

        elif parsed_argv.command == "payload":
            document = TextDocument.from_file(parsed_argv.file)
            model = parse_document(document.read_lines())
            provider = get_provider(model.header.server_type)
            print(
                serialize_payload(
                    provider.build_payload(
                        model,
                        settings.streaming == Streaming.ON,
                    )
                )
            )

        elif parsed_argv.command == "send":
            document = TextDocument.from_file(
                parsed_argv.file,
                width=settings.separator_width,
                auth_token=os.getenv(AUTH_TOKEN_ENV_VAR),
            )
            orchestrator = ExchangeOrchestrator(SubprocessTransport(), settings)

            try:
                orchestrator.send(document)

            finally:
                orchestrator.teardown()

    except ChatError as exc:
        info(str(exc))

        return 1

    except (OSError, UnicodeError) as exc:
        error(f"{type(exc)}: {exc}")

        return 1

    return 0


def run_stdio(settings: "Settings") -> int:
    document = TextDocument(
        sys.stdin.read().splitlines(),
        width=settings.separator_width,
        auth_token=os.getenv(AUTH_TOKEN_ENV_VAR),
    )
    orchestrator = ExchangeOrchestrator(SubprocessTransport(), settings)
    exit_code = 0

    try:
        orchestrator.send(document)

    except ChatError as exc:
        info(str(exc))
        exit_code = 1

    finally:
        orchestrator.teardown()

    # The document is echoed even on failure so that an editor filter never
    # wipes the buffer.
    print("\n".join(document.read_lines()))

    return exit_code


def run():
    return main(sys.argv)


def info(message: str, end=os.linesep):
    print(message, end=end, file=sys.stderr)


def warn(message: str):
    info("[warn] " + message)


def error(message: str):
    info("[error] " + message)


def get_item(
        container: typing.Any,
        path: str,
        default=None,
        expect_type=None
) -> typing.Any:
    """
    Extract data from nested dicts and lists based on a dot-separated
    path string. See TestGetItem for examples.
    """

    if path == "." or path == "":
        return container

    path = path.split(".")

    for key in path:
        if isinstance(container, collections.abc.Mapping):
            if key in container:
                container = container[key]
            else:
                return default
        elif (
                isinstance(container, collections.abc.Sequence)
                and not isinstance(container, str)
        ):
            if key.isdigit() and int(key) < len(container):
                container = container[int(key)]
            else:
                return default
        else:
            return default

    if expect_type is not None:
        if not isinstance(container, expect_type):
            return default

    return container


class ErrorKind(enum.Enum):
    """
    Every failure the client can report. The values are the stable,
    lower-cased category phrases that appear in the rendered messages;
    "{key}" is filled in from the error's key field.
    """

    MISSING_ENDSETUP = "no 'endsetup' separator found"
    UNEXPECTED_TEXT = "unexpected text"
    DUPLICATE_KEY = "duplicate '{key}'"
    MISSING_KEY = "no '{key}:' declaration found"
    EMPTY_VALUE = "empty '{key}'"
    INVALID_VALUE = "invalid '{key}' value"
    UNTERMINATED_SYSTEM_PROMPT = "unterminated 'system prompt'"
    INVALID_OPTION = "invalid 'option' declaration"
    DUPLICATE_OPTION = "duplicate option '{key}'"
    MISSING_USER_MESSAGE = "missing user message"
    MISSING_ASSISTANT_MESSAGE = "missing assistant message"
    UNTERMINATED_MESSAGE = "unterminated {key} message"
    UNMATCHED_DELIMITER = "unmatched '{key}'"
    EMPTY_MESSAGE = "empty {key} message"
    INVALID_RESOURCE = "invalid resource reference"
    MISPLACED_RESOURCE = "resource reference outside user message"
    NO_AUTH_TOKEN = "no auth token found"
    EXCHANGE_IN_PROGRESS = "exchange already in progress"
    ABNORMAL_EXIT = "abnormal exit"
    UNEXPECTED_STATUS = "unexpected status code"
    MALFORMED_RESPONSE = "malformed response"
    PROVIDER_ERROR = "provider error"
    EMPTY_REPLY = "empty reply"
    UNENCODABLE_TEXT = "text not representable in '{key}'"


class ChatError(Exception):
    def __init__(
            self,
            kind: ErrorKind,
            key: str="",
            line_number: typing.Optional[int]=None,
            detail: str="",
    ):
        self.kind = kind
        self.key = key
        self.line_number = line_number
        self.detail = detail

        super().__init__(self.format_message())

    @property
    def category(self) -> str:
        return self.kind.value.format(key=self.key)

    def format_message(self) -> str:
        message = "[error] " + self.category

        if self.line_number is not None:
            message += f" (line {self.line_number})"

        if self.detail:
            message += ": " + self.detail

        return message


class ParseError(ChatError):
    pass


class ResolutionError(ChatError):
    pass


class StateError(ChatError):
    pass


class TransportError(ChatError):
    pass


class ServerType(str, enum.Enum):
    OLLAMA = "Ollama"
    OPEN_WEBUI = "Open WebUI"


class ResourceKind(str, enum.Enum):
    FILE = "file"
    COLLECTION = "collection"


class Streaming(str, enum.Enum):
    OFF = "off"
    ON = "on"


class Role(str, enum.Enum):
    USER = "user"
    ASSISTANT = "assistant"


class Delimiter(str, enum.Enum):
    USER_OPEN = ">>>"
    USER_CLOSE = "<<<"
    ASSISTANT_OPEN = "=>>"
    ASSISTANT_CLOSE = "<<="


@dataclasses.dataclass
class ResourceRef:
    kind: ResourceKind
    id: str


@dataclasses.dataclass
class Header:
    server_type: typing.Optional[ServerType] = None
    server_url: str = ""
    model_id: str = ""
    use_auth: typing.Optional[bool] = None
    auth_key: typing.Optional[str] = None
    system_prompt: typing.Optional[str] = None
    show_reasoning: typing.Union[bool, str, None] = None
    options: typing.Dict[str, str] = dataclasses.field(default_factory=dict)


@dataclasses.dataclass
class Exchange:
    user: str
    assistant: typing.Optional[str] = None
    user_resources: typing.Optional[typing.List[ResourceRef]] = None


@dataclasses.dataclass
class ConversationFlags:
    no_user_message_close: bool = False


@dataclasses.dataclass
class ConversationModel:
    header: Header
    messages: typing.List[Exchange] = dataclasses.field(default_factory=list)
    flags: ConversationFlags = dataclasses.field(default_factory=ConversationFlags)


@dataclasses.dataclass
class NormalizedReply:
    message: str
    reasoning: str
    first_ts: typing.Any
    last_ts: typing.Any


PROTECTED_TOKENS = (
    Delimiter.USER_OPEN.value,
    Delimiter.USER_CLOSE.value,
    Delimiter.ASSISTANT_OPEN.value,
    Delimiter.ASSISTANT_CLOSE.value,
    "[",
    "\\n",
)


def _match_protected_token(text: str, pos: int) -> str:
    for token in PROTECTED_TOKENS:
        if text.startswith(token, pos):
            return token

    return ""


def escape_special_sequences(text: str) -> str:
    """
    Put a backslash in front of each delimiter token, "[", and the two
    character "\\n" sequence, so that the text can be placed inside a
    message without being mistaken for structure.
    """

    escaped = []
    pos = 0

    while pos < len(text):
        token = _match_protected_token(text, pos)

        if token:
            escaped.append("\\" + token)
            pos += len(token)
        else:
            escaped.append(text[pos])
            pos += 1

    return "".join(escaped)


def unescape_special_sequences(text: str) -> str:
    """
    Resolve escapes in a single pass with two states: NORMAL, and
    AFTER-BACKSLASH. After a backslash, a protected token is emitted
    literally and "n" becomes a newline; any other backslash is kept.
    Exactly one backslash is consumed per escape, there is no recursion.
    """

    unescaped = []
    after_backslash = False
    pos = 0

    while pos < len(text):
        char = text[pos]

        if after_backslash:
            after_backslash = False
            token = _match_protected_token(text, pos)

            if token:
                unescaped.append(token)
                pos += len(token)

            elif char == "n":
                unescaped.append("\n")
                pos += 1

            else:
                # Literal backslash, the current character is scanned again.
                unescaped.append("\\")

            continue

        if char == "\\":
            after_backslash = True
        else:
            unescaped.append(char)

        pos += 1

    if after_backslash:
        unescaped.append("\\")

    return "".join(unescaped)


def normalize_content(lines: typing.Iterable[str]) -> str:
    """
    Join the lines of a message: lines of a paragraph are joined with a
    single space, whitespace-only lines separate paragraphs, which are
    joined with exactly one blank line. Escapes are resolved last.
    """

    paragraphs = []
    paragraph = []

    for line in lines:
        if line.strip() == "":
            if len(paragraph) > 0:
                paragraphs.append(" ".join(paragraph).strip())
                paragraph = []
        else:
            paragraph.append(line.strip())

    if len(paragraph) > 0:
        paragraphs.append(" ".join(paragraph).strip())

    return unescape_special_sequences("\n\n".join(paragraphs))


def parse_bool(value: str) -> typing.Optional[bool]:
    value_lower = value.strip().lower()

    if value_lower == "true":
        return True

    if value_lower == "false":
        return False

    return None


class DocumentParser:
    ENDSETUP_RE = re.compile(r"^\s*\*+\s*ENDSETUP\s*\*+\s*$")
    COMMENT_RE = re.compile(r"^\s*#")
    SEPARATOR_RE = re.compile(r"^\s*-+\s*$")
    HEADER_DECLARATION_RE = re.compile(
        r"^\s*(Server Type|Server URL|Model ID|Use Auth Token|Auth Token"
        r"|Show Reasoning|System Prompt|Option):(.*)$"
    )
    RESOURCE_REF_RE = re.compile(r"^\[([fFcC]):([^\[\]\s]+)\]$")

    REQUIRED_KEYS = ("Server Type", "Server URL", "Model ID")

    SERVER_TYPES = {
        "ollama": ServerType.OLLAMA,
        "open webui": ServerType.OPEN_WEBUI,
        "open-webui": ServerType.OPEN_WEBUI,
    }

    def __init__(self, endsetup_re: typing.Optional[re.Pattern]=None):
        self._endsetup_re = endsetup_re or self.ENDSETUP_RE

    def parse(
            self,
            lines: typing.Iterable[str],
            header_only: bool=False,
    ) -> ConversationModel:
        lines = list(lines)
        separator_index = self._find_separator(lines)
        model = ConversationModel(
            header=self._parse_header(lines, separator_index),
        )

        if not header_only:
            self._parse_body(lines, separator_index + 1, model)

        return model

    def _find_separator(self, lines) -> int:
        for index, line in enumerate(lines):
            if self._endsetup_re.match(line):
                return index

        raise ParseError(
            ErrorKind.MISSING_ENDSETUP,
            detail="the header must end with a line like *** ENDSETUP ***",
        )

    def _parse_header(self, lines, separator_index: int) -> Header:
        header = Header()
        declared_keys = set()
        prompt_lines = None
        prompt_line_number = 0

        for index in range(separator_index):
            line = lines[index]
            line_number = index + 1

            if self.COMMENT_RE.match(line):
                continue

            if prompt_lines is not None:
                if line.strip() == "":
                    header.system_prompt = self._finish_system_prompt(
                        prompt_lines,
                        prompt_line_number,
                    )
                    prompt_lines = None
                else:
                    prompt_lines.append(line)

                continue

            if line.strip() == "":
                continue

            match = self.HEADER_DECLARATION_RE.match(line)

            if match is None:
                raise ParseError(
                    ErrorKind.UNEXPECTED_TEXT,
                    line_number=line_number,
                    detail=repr(line.strip()),
                )

            key = match[1]
            value = match[2].strip()

            if key == "Option":
                self._add_option(header, value, line_number)

                continue

            if key in declared_keys:
                raise ParseError(
                    ErrorKind.DUPLICATE_KEY,
                    key=key.lower(),
                    line_number=line_number,
                )

            declared_keys.add(key)

            if key == "System Prompt":
                prompt_lines = [value]
                prompt_line_number = line_number

                continue

            if value == "":
                raise ParseError(
                    ErrorKind.EMPTY_VALUE,
                    key=key.lower(),
                    line_number=line_number,
                )

            self._set_header_value(header, key, value, line_number)

        if prompt_lines is not None:
            raise ParseError(
                ErrorKind.UNTERMINATED_SYSTEM_PROMPT,
                line_number=prompt_line_number,
            )

        self._check_required_keys(declared_keys, separator_index + 1)

        return header

    def _check_required_keys(self, declared_keys, line_number):
        for key in self.REQUIRED_KEYS:
            if key not in declared_keys:
                raise ParseError(
                    ErrorKind.MISSING_KEY,
                    key=key.lower(),
                    line_number=line_number,
                )

    @staticmethod
    def _finish_system_prompt(prompt_lines, line_number) -> str:
        system_prompt = normalize_content(prompt_lines)

        if system_prompt == "":
            raise ParseError(
                ErrorKind.EMPTY_VALUE,
                key="system prompt",
                line_number=line_number,
            )

        return system_prompt

    @staticmethod
    def _add_option(header: Header, value: str, line_number: int):
        parts = value.split("=", 1)

        if len(parts) != 2 or parts[0].strip() == "" or parts[1].strip() == "":
            raise ParseError(
                ErrorKind.INVALID_OPTION,
                line_number=line_number,
                detail=f"expected name=value, got {value!r}",
            )

        name = parts[0].strip()

        if name in header.options:
            raise ParseError(
                ErrorKind.DUPLICATE_OPTION,
                key=name,
                line_number=line_number,
            )

        header.options[name] = parts[1].strip()

    def _set_header_value(self, header, key, value, line_number):
        if key == "Server Type":
            server_type = self.SERVER_TYPES.get(value.lower())

            if server_type is None:
                raise ParseError(
                    ErrorKind.INVALID_VALUE,
                    key="server type",
                    line_number=line_number,
                    detail=f"expected Ollama or Open WebUI, got {value!r}",
                )

            header.server_type = server_type

        elif key == "Server URL":
            header.server_url = value

        elif key == "Model ID":
            header.model_id = value

        elif key == "Auth Token":
            header.auth_key = value

        elif key == "Use Auth Token":
            use_auth = parse_bool(value)

            if use_auth is None:
                raise ParseError(
                    ErrorKind.INVALID_VALUE,
                    key="use auth token",
                    line_number=line_number,
                    detail=f"expected true or false, got {value!r}",
                )

            header.use_auth = use_auth

        elif key == "Show Reasoning":
            show_reasoning = parse_bool(value)

            if show_reasoning is None and value.lower() in REASONING_LEVELS:
                show_reasoning = value.lower()

            if show_reasoning is None:
                raise ParseError(
                    ErrorKind.INVALID_VALUE,
                    key="show reasoning",
                    line_number=line_number,
                    detail=(
                        "expected true, false, or one of "
                        + ", ".join(REASONING_LEVELS)
                        + f", got {value!r}"
                    ),
                )

            header.show_reasoning = show_reasoning

    def _parse_body(self, lines, start: int, model: ConversationModel):
        messages = model.messages
        open_role = None
        open_line_number = 0
        content = []
        resources = []

        for index in range(start, len(lines)):
            line = lines[index]
            line_number = index + 1
            delimiter = self._match_delimiter(line)

            if open_role is None:
                if delimiter is None:
                    self._check_text_outside_messages(line, line_number)

                    continue

                if delimiter in (Delimiter.USER_CLOSE, Delimiter.ASSISTANT_CLOSE):
                    raise ParseError(
                        ErrorKind.UNMATCHED_DELIMITER,
                        key=delimiter.value,
                        line_number=line_number,
                    )

                if delimiter == Delimiter.USER_OPEN:
                    if len(messages) > 0 and messages[-1].assistant is None:
                        raise ParseError(
                            ErrorKind.MISSING_ASSISTANT_MESSAGE,
                            line_number=line_number,
                        )

                    open_role = Role.USER

                else:
                    if len(messages) == 0 or messages[-1].assistant is not None:
                        raise ParseError(
                            ErrorKind.MISSING_USER_MESSAGE,
                            line_number=line_number,
                        )

                    open_role = Role.ASSISTANT

                open_line_number = line_number
                content = []
                resources = []
                self._add_message_line(
                    open_role,
                    line[len(delimiter.value):].lstrip(),
                    line_number,
                    content,
                    resources,
                )

                continue

            if delimiter is None:
                self._add_message_line(
                    open_role,
                    line,
                    line_number,
                    content,
                    resources,
                )

                continue

            if (
                    (open_role == Role.USER and delimiter == Delimiter.USER_CLOSE)
                    or (
                        open_role == Role.ASSISTANT
                        and delimiter == Delimiter.ASSISTANT_CLOSE
                    )
            ):
                trailing_text = line[len(delimiter.value):].strip()

                if trailing_text != "":
                    raise ParseError(
                        ErrorKind.UNEXPECTED_TEXT,
                        line_number=line_number,
                        detail=repr(trailing_text),
                    )

                self._finish_message(
                    open_role,
                    open_line_number,
                    content,
                    resources,
                    messages,
                )
                open_role = None

                continue

            raise ParseError(
                ErrorKind.UNTERMINATED_MESSAGE,
                key=open_role.value,
                line_number=open_line_number,
            )

        if open_role == Role.ASSISTANT:
            raise ParseError(
                ErrorKind.UNTERMINATED_MESSAGE,
                key=open_role.value,
                line_number=open_line_number,
            )

        # The end of the document closes the last user message, unless it is
        # still an empty ">>> " prompt.
        if open_role == Role.USER and not self._is_blank_prompt(content, resources):
            self._finish_message(
                open_role,
                open_line_number,
                content,
                resources,
                messages,
            )
            model.flags.no_user_message_close = True

    @staticmethod
    def _is_blank_prompt(content, resources) -> bool:
        return len(resources) == 0 and all(line.strip() == "" for line in content)

    @staticmethod
    def _match_delimiter(line: str) -> typing.Optional[Delimiter]:
        for delimiter in Delimiter:
            if line.startswith(delimiter.value):
                return delimiter

        return None

    def _check_text_outside_messages(self, line: str, line_number: int):
        if (
                line.strip() == ""
                or self.COMMENT_RE.match(line)
                or self.SEPARATOR_RE.match(line)
        ):
            return

        if line.lstrip().startswith("["):
            raise ParseError(
                ErrorKind.MISPLACED_RESOURCE,
                line_number=line_number,
                detail=repr(line.strip()),
            )

        raise ParseError(
            ErrorKind.UNEXPECTED_TEXT,
            line_number=line_number,
            detail=repr(line.strip()),
        )

    def _add_message_line(self, role, line, line_number, content, resources):
        if not line.startswith("["):
            content.append(line)

            return

        if role != Role.USER:
            raise ParseError(
                ErrorKind.MISPLACED_RESOURCE,
                line_number=line_number,
                detail=repr(line.strip()),
            )

        resources.extend(self._parse_resource_line(line, line_number))

    def _parse_resource_line(
            self,
            line: str,
            line_number: int,
    ) -> typing.List[ResourceRef]:
        refs = []

        for word in line.split():
            match = self.RESOURCE_REF_RE.match(word)

            if match is None:
                raise ParseError(
                    ErrorKind.INVALID_RESOURCE,
                    line_number=line_number,
                    detail=f"expected [f:ID] or [c:ID], got {word!r}",
                )

            kind = (
                ResourceKind.FILE
                if match[1].lower() == "f"
                else ResourceKind.COLLECTION
            )
            refs.append(ResourceRef(kind=kind, id=match[2]))

        return refs

    @staticmethod
    def _finish_message(role, line_number, content, resources, messages):
        text = normalize_content(content)

        if text == "":
            raise ParseError(
                ErrorKind.EMPTY_MESSAGE,
                key=role.value,
                line_number=line_number,
            )

        if role == Role.USER:
            messages.append(
                Exchange(
                    user=text,
                    user_resources=list(resources) if len(resources) > 0 else None,
                )
            )
        else:
            messages[-1].assistant = text


def parse_document(
        lines: typing.Iterable[str],
        header_only: bool=False,
) -> ConversationModel:
    return DocumentParser().parse(lines, header_only=header_only)


def convert_option_value(value: str) -> typing.Union[str, bool]:
    as_bool = parse_bool(value)

    return value if as_bool is None else as_bool


def serialize_payload(payload: typing.Dict[str, typing.Any]) -> str:
    return json.dumps(payload, indent=2, ensure_ascii=False)


def write_payload(payload: typing.Dict[str, typing.Any], sink: typing.TextIO):
    sink.write(serialize_payload(payload))


class Provider:
    """
    Dialect of a chat server: where the chat endpoint is, what the request
    body looks like, and how to get the reply out of the response body.
    """

    ENDPOINT = ""

    MESSAGE_PATHS = ()
    REASONING_PATHS = ()
    DELTA_MESSAGE_PATHS = ()
    DELTA_REASONING_PATHS = ()
    TIMESTAMP_PATH = ""

    def build_payload(
            self,
            model: ConversationModel,
            streaming: bool,
    ) -> typing.Dict[str, typing.Any]:
        raise NotImplementedError()

    def reduce_response(self, body: str, streaming: bool) -> NormalizedReply:
        if streaming:
            return self._reduce_stream(body)

        response = self._load_json(body)
        timestamp = get_item(response, self.TIMESTAMP_PATH)

        return NormalizedReply(
            message=self._find_text(response, self.MESSAGE_PATHS),
            reasoning=self._find_text(response, self.REASONING_PATHS),
            first_ts=timestamp,
            last_ts=timestamp,
        )

    def _reduce_stream(self, body: str) -> NormalizedReply:
        message = ""
        reasoning = ""
        timestamps = []

        for line in self._iter_stream_lines(body):
            delta = self._load_json(line)
            message += self._find_text(delta, self.DELTA_MESSAGE_PATHS)
            reasoning += self._find_text(delta, self.DELTA_REASONING_PATHS)
            timestamps.append(get_item(delta, self.TIMESTAMP_PATH))

        return NormalizedReply(
            message=message,
            reasoning=reasoning,
            first_ts=timestamps[0] if len(timestamps) > 0 else None,
            last_ts=timestamps[-1] if len(timestamps) > 0 else None,
        )

    def _iter_stream_lines(self, body: str) -> typing.Iterator[str]:
        for line in body.splitlines():
            line = line.strip()

            if line:
                yield line

    @staticmethod
    def _load_json(text: str) -> typing.Dict[str, typing.Any]:
        try:
            response = json.loads(text)

        except json.JSONDecodeError as exc:
            raise TransportError(
                ErrorKind.MALFORMED_RESPONSE,
                detail=f"{exc}: {text!r}",
            ) from exc

        if not isinstance(response, collections.abc.Mapping):
            raise TransportError(
                ErrorKind.MALFORMED_RESPONSE,
                detail=f"expected a JSON object, got {text!r}",
            )

        provider_error = get_item(response, "error")

        if provider_error:
            raise TransportError(
                ErrorKind.PROVIDER_ERROR,
                detail=str(get_item(provider_error, "message", provider_error)),
            )

        return response

    @staticmethod
    def _find_text(data, paths: typing.Iterable[str]) -> str:
        for path in paths:
            text = get_item(data, path, expect_type=str)

            if text:
                return text

        return ""

    @staticmethod
    def _convert_conversation(model: ConversationModel):
        messages = []

        if model.header.system_prompt is not None:
            messages.append(
                {"role": "system", "content": model.header.system_prompt}
            )

        for exchange in model.messages:
            messages.append({"role": "user", "content": exchange.user})

            if exchange.assistant is not None:
                messages.append(
                    {"role": "assistant", "content": exchange.assistant}
                )

        return messages

    @staticmethod
    def _convert_options(options: typing.Dict[str, str]):
        return {
            name: convert_option_value(value)
            for name, value in options.items()
        }


class OllamaProvider(Provider):
    # https://github.com/ollama/ollama/blob/main/docs/api.md#generate-a-chat-completion

    ENDPOINT = "/api/chat"

    MESSAGE_PATHS = ("message.content",)
    REASONING_PATHS = ("message.thinking",)
    DELTA_MESSAGE_PATHS = MESSAGE_PATHS
    DELTA_REASONING_PATHS = REASONING_PATHS
    TIMESTAMP_PATH = "created_at"

    def build_payload(
            self,
            model: ConversationModel,
            streaming: bool,
    ) -> typing.Dict[str, typing.Any]:
        header = model.header

        if any(exchange.user_resources for exchange in model.messages):
            warn("Ollama does not support file and collection references, ignoring them.")

        body = {
            "model": header.model_id,
            "think": self._convert_show_reasoning(header.show_reasoning),
            "stream": streaming,
            "messages": self._convert_conversation(model),
        }

        if len(header.options) > 0:
            body["options"] = self._convert_options(header.options)

        return body

    @staticmethod
    def _convert_show_reasoning(show_reasoning) -> typing.Union[bool, str]:
        if show_reasoning is None:
            return False

        return show_reasoning


class OpenWebUiProvider(Provider):
    # https://docs.openwebui.com/getting-started/api-endpoints/

    ENDPOINT = "/api/chat/completions"

    MESSAGE_PATHS = ("choices.0.message.content",)
    REASONING_PATHS = (
        "choices.0.message.reasoning_content",
        "choices.0.message.reasoning",
    )
    DELTA_MESSAGE_PATHS = ("choices.0.delta.content",)
    DELTA_REASONING_PATHS = (
        "choices.0.delta.reasoning_content",
        "choices.0.delta.reasoning",
    )
    TIMESTAMP_PATH = "created"

    SSE_DATA_PREFIX = "data:"
    SSE_DONE = "[DONE]"

    def build_payload(
            self,
            model: ConversationModel,
            streaming: bool,
    ) -> typing.Dict[str, typing.Any]:
        header = model.header

        body = {
            "model": header.model_id,
            "stream": streaming,
            "messages": self._convert_conversation(model),
        }

        if len(model.messages) > 0 and model.messages[-1].user_resources:
            body["files"] = [
                {"type": resource.kind.value, "id": resource.id}
                for resource in model.messages[-1].user_resources
            ]

        if len(header.options) > 0:
            body["options"] = self._convert_options(header.options)

        return body

    def _iter_stream_lines(self, body: str) -> typing.Iterator[str]:
        # Open WebUI relays OpenAI style server-sent events.
        for line in super()._iter_stream_lines(body):
            if line.startswith(self.SSE_DATA_PREFIX):
                line = line[len(self.SSE_DATA_PREFIX):].strip()

            if line and line != self.SSE_DONE:
                yield line


PROVIDERS = {
    ServerType.OLLAMA: OllamaProvider(),
    ServerType.OPEN_WEBUI: OpenWebUiProvider(),
}


def get_provider(server_type: ServerType) -> Provider:
    return PROVIDERS[server_type]


def build_payload(
        model: ConversationModel,
        server_type: ServerType,
        streaming: bool,
) -> typing.Dict[str, typing.Any]:
    return get_provider(server_type).build_payload(model, streaming)


def reduce_response(
        body: str,
        server_type: ServerType,
        streaming: bool,
) -> NormalizedReply:
    return get_provider(server_type).reduce_response(body, streaming)


def read_credential_file(file_name: typing.Optional[str]) -> typing.Optional[str]:
    if not file_name:
        return None

    file_name = os.path.expanduser(file_name)

    if not os.path.isfile(file_name):
        return None

    with open(file_name, "r") as f:
        token = f.readline().strip()

    return token or None


def resolve_auth_token(
        header: Header,
        buffer_token: typing.Optional[str]=None,
        credential_file: typing.Optional[str]=None,
) -> str:
    """
    Pick the token for the Authorization header, or NO_AUTH_TOKEN. The
    document's own token wins, then the buffer-local one, then the first
    line of the credential file.
    """

    if header.use_auth is False:
        return NO_AUTH_TOKEN

    if header.auth_key:
        return header.auth_key

    if buffer_token:
        return buffer_token

    token = read_credential_file(credential_file)

    if token:
        return token

    if header.use_auth:
        raise ResolutionError(
            ErrorKind.NO_AUTH_TOKEN,
            detail=(
                "'Use Auth Token: true' is declared, but there is no"
                " 'Auth Token:' in the document, no buffer-local token,"
                " and no credential file"
            ),
        )

    return NO_AUTH_TOKEN


@dataclasses.dataclass
class Settings:
    streaming: Streaming = Streaming.OFF
    credential_file: str = ""
    extra_curl_args: typing.List[str] = dataclasses.field(default_factory=list)
    debug: bool = False
    curl: str = "curl"
    scratch_dir: str = ""
    separator_width: int = 80


def parse_streaming(streaming: str) -> Streaming:
    streaming_lower = streaming.lower()

    if streaming_lower == Streaming.ON.value:
        return Streaming.ON

    if streaming_lower == Streaming.OFF.value:
        return Streaming.OFF

    raise ValueError(f"Streaming must be either {Streaming.ON.value} or {Streaming.OFF.value}, got {streaming!r}")


def load_settings(file_name: str=SETTINGS_FILE_NAME) -> Settings:
    if not os.path.exists(file_name):
        return Settings()

    info(f"Loading {file_name}...")

    try:
        with open(file_name, "r") as f:
            state = json.load(f)

        if not isinstance(state, collections.abc.Mapping):
            raise TypeError("settings must be a JSON object")

        streaming = parse_streaming(
            get_item(state, "streaming", default=Streaming.OFF.value, expect_type=str)
        )
        extra_curl_args = get_item(state, "extra_curl_args", default=[], expect_type=list)

        if not all(isinstance(arg, str) for arg in extra_curl_args):
            raise TypeError("extra_curl_args must be a list of strings")

        separator_width = get_item(state, "separator_width", default=80, expect_type=int)

        if separator_width < 1:
            raise ValueError(f"separator_width must be positive, got {separator_width!r}")

    except Exception as exc:
        error(f"Unable to read settings from {file_name}: {type(exc)}: {exc}")
        error("""\
Expected format (every field is optional):

{
  "streaming": "off",
  "credential_file": "~/.config/llmchat/token",
  "extra_curl_args": ["--max-time", "300"],
  "debug": false,
  "curl": "curl",
  "scratch_dir": "",
  "separator_width": 80
}
""",
        )

        return Settings()

    return Settings(
        streaming=streaming,
        credential_file=get_item(state, "credential_file", default="", expect_type=str),
        extra_curl_args=list(extra_curl_args),
        debug=get_item(state, "debug", default=False, expect_type=bool),
        curl=get_item(state, "curl", default="curl", expect_type=str),
        scratch_dir=get_item(state, "scratch_dir", default="", expect_type=str),
        separator_width=separator_width,
    )


class Document:
    """
    The editor buffer holding a conversation, seen through the handful of
    operations that the client needs.
    """

    def read_lines(self) -> typing.List[str]:
        raise NotImplementedError()

    def line_count(self) -> int:
        return len(self.read_lines())

    def width(self) -> int:
        return 80

    def encoding(self) -> str:
        return "utf-8"

    def auth_token(self) -> typing.Optional[str]:
        return None

    def write_lines(self, line_number: int, lines: typing.Iterable[str]):
        """
        Insert the lines after the first line_number lines of the document.
        """

        raise NotImplementedError()


class TextDocument(Document):
    def __init__(
            self,
            lines: typing.Iterable[str],
            width: int=80,
            encoding: str="utf-8",
            auth_token: typing.Optional[str]=None,
            file_name: typing.Optional[str]=None,
    ):
        self._lines = list(lines)
        self._width = width
        self._encoding = encoding
        self._auth_token = auth_token
        self._file_name = file_name

    @classmethod
    def from_file(
            cls,
            file_name: str,
            width: int=80,
            encoding: str="utf-8",
            auth_token: typing.Optional[str]=None,
    ) -> "TextDocument":
        with open(file_name, "r", encoding=encoding) as f:
            lines = f.read().splitlines()

        return cls(lines, width, encoding, auth_token, file_name)

    def read_lines(self) -> typing.List[str]:
        return list(self._lines)

    def width(self) -> int:
        return self._width

    def encoding(self) -> str:
        return self._encoding

    def auth_token(self) -> typing.Optional[str]:
        return self._auth_token

    def write_lines(self, line_number: int, lines: typing.Iterable[str]):
        self._lines[line_number:line_number] = list(lines)

        if self._file_name is not None:
            with open(self._file_name, "w", encoding=self._encoding) as f:
                f.write("\n".join(self._lines) + "\n")


class Transport:
    """
    Runs an external command without blocking the caller (when the host
    allows), reports each piece of its merged stdout and stderr to
    on_output, then its exit code to on_exit exactly once.
    """

    def run(
            self,
            command: collections.abc.Sequence[str],
            on_output: collections.abc.Callable[[str], None],
            on_exit: collections.abc.Callable[[int], None],
    ):
        raise NotImplementedError()


class SubprocessTransport(Transport):
    """
    Command line flavor: the editor is not around, so it is fine to wait
    for the process.
    """

    def run(
            self,
            command: collections.abc.Sequence[str],
            on_output: collections.abc.Callable[[str], None],
            on_exit: collections.abc.Callable[[int], None],
    ):
        try:
            process = subprocess.Popen(
                list(command),
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
            )

        except OSError as exc:
            on_output(f"{type(exc)}: {exc}")
            on_exit(127)

            return

        with process:
            for line in process.stdout:
                on_output(line)

            exit_code = process.wait()

        on_exit(exit_code)


@dataclasses.dataclass
class ExchangeSession:
    command: typing.List[str]
    settings: Settings
    model: ConversationModel
    document: Document
    line_number: int
    width: int
    encoding: str
    streaming: bool
    request_file: str
    response_file: str
    header_file: typing.Optional[str] = None
    output: str = ""
    started_at: float = dataclasses.field(default_factory=time.time)

    def scratch_files(self) -> typing.List[str]:
        return [
            file_name
            for file_name in (self.request_file, self.response_file, self.header_file)
            if file_name is not None
        ]

    def delete_scratch_files(self):
        delete_files(self.scratch_files())


def delete_files(file_names: typing.Iterable[str]):
    for file_name in file_names:
        if os.path.exists(file_name):
            os.remove(file_name)


class ExchangeOrchestrator:
    """
    Owns the one exchange that may be in flight: turns a parsed document
    into a curl invocation, hands it to the transport, and appends the
    reply to the document when the transport reports completion.
    """

    STATUS_RE = re.compile(r"([0-9]{3})\s*$")

    def __init__(
            self,
            transport: Transport,
            settings: typing.Optional[Settings]=None,
            parser: typing.Optional[DocumentParser]=None,
    ):
        self._transport = transport
        self._settings = settings or Settings()
        self._parser = parser or DocumentParser()
        self._session = None

    @property
    def session(self) -> typing.Optional[ExchangeSession]:
        return self._session

    def is_busy(self) -> bool:
        return self._session is not None

    def send(self, document: Document) -> ExchangeSession:
        self._ensure_idle()

        model = self._parser.parse(document.read_lines())

        return self.begin(model, document)

    def begin(
            self,
            model: ConversationModel,
            document: Document,
    ) -> ExchangeSession:
        self._ensure_idle()
        self._ensure_unanswered(model)

        header = model.header
        provider = get_provider(header.server_type)
        token = resolve_auth_token(
            header,
            document.auth_token(),
            self._settings.credential_file,
        )
        streaming = self._settings.streaming == Streaming.ON
        payload = provider.build_payload(model, streaming)
        encoding = document.encoding()
        url = header.server_url.rstrip("/") + provider.ENDPOINT

        request_file = self._create_scratch_file("request-", ".json")
        response_file = self._create_scratch_file("response-", ".json")
        header_file = (
            self._create_scratch_file("headers-", ".txt")
            if self._settings.debug
            else None
        )
        scratch_files = [request_file, response_file, header_file]

        try:
            with open(request_file, "w", encoding=encoding) as f:
                write_payload(payload, f)

        except UnicodeEncodeError as exc:
            delete_files(name for name in scratch_files if name is not None)

            raise TransportError(
                ErrorKind.UNENCODABLE_TEXT,
                key=encoding,
                detail=str(exc),
            ) from exc

        except Exception:
            delete_files(name for name in scratch_files if name is not None)
            raise

        session = ExchangeSession(
            command=self._build_command(
                url,
                token,
                encoding,
                request_file,
                response_file,
                header_file,
            ),
            settings=self._settings,
            model=model,
            document=document,
            line_number=document.line_count(),
            width=document.width(),
            encoding=encoding,
            streaming=streaming,
            request_file=request_file,
            response_file=response_file,
            header_file=header_file,
        )
        self._session = session

        info(f"Waiting for {url}...")

        self._transport.run(
            session.command,
            lambda text: self._on_output(session, text),
            lambda exit_code: self._on_exit(session, exit_code),
        )

        return session

    def abort(self):
        session = self._session
        self._session = None

        if session is not None:
            session.delete_scratch_files()
            info("Exchange aborted.")

    def teardown(self):
        if self._session is not None:
            warn("Discarding an exchange which did not finish.")
            self.abort()

    def _ensure_idle(self):
        if self._session is not None:
            raise StateError(
                ErrorKind.EXCHANGE_IN_PROGRESS,
                detail="wait for the reply or abort the exchange",
            )

    @staticmethod
    def _ensure_unanswered(model: ConversationModel):
        if len(model.messages) == 0 or model.messages[-1].assistant is not None:
            raise ParseError(
                ErrorKind.MISSING_USER_MESSAGE,
                detail="nothing to send, write a message after the last '>>>'",
            )

    def _create_scratch_file(self, prefix: str, suffix: str) -> str:
        scratch_file_ctx = tempfile.NamedTemporaryFile(
            prefix="llmchat-" + prefix,
            suffix=suffix,
            dir=self._settings.scratch_dir or None,
            mode="w+",
            delete=False,
        )

        with scratch_file_ctx as scratch_file:
            return scratch_file.name

    def _build_command(
            self,
            url,
            token,
            encoding,
            request_file,
            response_file,
            header_file,
    ) -> typing.List[str]:
        command = [
            self._settings.curl,
            "--silent",
            "--show-error",
            "--location",
            "--request", "POST",
            "--header", f"Content-Type: application/json; charset={encoding}",
        ]

        if token != NO_AUTH_TOKEN:
            command += ["--header", f"Authorization: Bearer {token}"]

        command += [
            "--data-binary", "@" + request_file,
            "--output", response_file,
            "--write-out", "%{http_code}",
        ]

        if header_file is not None:
            command += ["--dump-header", header_file]

        command += self._settings.extra_curl_args
        command.append(url)

        return command

    def _on_output(self, session: ExchangeSession, text: str):
        if self._session is not session:
            return

        session.output += text

    def _on_exit(self, session: ExchangeSession, exit_code: int):
        if self._session is not session:
            warn("Ignoring the completion of an exchange which is no longer in progress.")

            return

        try:
            if session.header_file is not None:
                self._log_response_headers(session)

            if exit_code != 0:
                raise TransportError(
                    ErrorKind.ABNORMAL_EXIT,
                    detail=f"exit code {exit_code}; output: {session.output.strip()!r}",
                )

            body = self._read_response(session)
            status_match = self.STATUS_RE.search(session.output)
            status = int(status_match[1]) if status_match else None

            if status is None or not 200 <= status < 300:
                raise TransportError(
                    ErrorKind.UNEXPECTED_STATUS,
                    detail=f"{status}; body: {body!r}",
                )

            reply = get_provider(session.model.header.server_type).reduce_response(
                body,
                session.streaming,
            )

            if reply.message.strip() == "":
                raise TransportError(ErrorKind.EMPTY_REPLY, detail=repr(body))

        finally:
            session.delete_scratch_files()

        info(f"Reply received (first: {reply.first_ts}, last: {reply.last_ts}).")

        self._append_reply(session, reply)
        self._session = None

    @staticmethod
    def _read_response(session: ExchangeSession) -> str:
        if not os.path.exists(session.response_file):
            return ""

        with open(session.response_file, "r", encoding=session.encoding, errors="replace") as f:
            return f.read()

    @staticmethod
    def _log_response_headers(session: ExchangeSession):
        if not os.path.exists(session.header_file):
            return

        with open(session.header_file, "r", errors="replace") as f:
            info("Response headers:\n" + f.read().strip())

    @staticmethod
    def _append_reply(session: ExchangeSession, reply: NormalizedReply):
        lines = []

        if session.model.flags.no_user_message_close:
            lines.append(Delimiter.USER_CLOSE.value)

        reasoning = reply.reasoning.strip()

        if session.model.header.show_reasoning and reasoning:
            lines.append("# Reasoning:")
            lines.extend(
                ("# " + line).rstrip() for line in reasoning.splitlines()
            )

        lines.append(Delimiter.ASSISTANT_OPEN.value)
        lines.extend(escape_special_sequences(reply.message.strip()).splitlines())
        lines.append(Delimiter.ASSISTANT_CLOSE.value)
        lines.append("")
        lines.append("-" * session.width)
        lines.append("")
        lines.append(Delimiter.USER_OPEN.value + " ")

        line_number = min(session.line_number, session.document.line_count())
        session.document.write_lines(line_number, lines)


def new_chat_document(
        server_type: str="Ollama",
        server_url: str="http://localhost:11434",
        model_id: str="llama3.2:latest",
) -> typing.List[str]:
    return [
        "# Lines starting with # are comments. Uncomment the settings you need.",
        f"Server Type: {server_type}",
        f"Server URL: {server_url}",
        f"Model ID: {model_id}",
        "# Use Auth Token: false",
        "# Auth Token: secret",
        "# Show Reasoning: false",
        "# Option: temperature=0.7",
        "# System Prompt: You are a helpful assistant. The prompt ends at the",
        "#   first blank line.",
        "*** ENDSETUP ***",
        "",
        Delimiter.USER_OPEN.value + " ",
    ]


if __name__ == "__main__":
    sys.exit(main(sys.argv))
