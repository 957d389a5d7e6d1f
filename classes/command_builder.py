# classes/command_builder.py

import json
import logging
import re
from typing import Any, Dict, Optional, Tuple

import commentjson
import yaml
from json_repair import repair_json

from classes.entities import RUN_LUA, Command
from classes.relay_errors import ProviderError

logger = logging.getLogger("devblox_relay")

_LUA_FENCE = re.compile(r"```(?:lua|luau)?\s([\s\S]*?)```", re.IGNORECASE)


class CommandBuilder:
    """
    Turns a raw AI reply into a RUN_LUA command.

    Accepted reply shapes, in order:
    - the JSON envelope {"explainer": ..., "code": ...} (fenced or not, with
      comments, raw newlines in strings or other near-JSON damage)
    - prose with a ```lua fenced block
    - bare Lua source
    A reply without usable code is never queued.
    """

    def clean_triple_backticks(self, code) -> str:
        pattern = r'```[a-zA-Z]*\n?|```\n?'
        return re.sub(pattern, '', code)

    def _coerce_field_to_str(self, value) -> str:
        if value is None:
            return ""
        if isinstance(value, str):
            return value.strip()
        try:
            return json.dumps(value, indent=2)
        except TypeError:
            return str(value).strip()

    def _escape_raw_newlines(self, json_str: str) -> str:
        # models often emit multi-line Lua inside a JSON string without escaping it
        def fix(match):
            content = match.group(1)
            content = re.sub(r'(?<!\\)\n', r'\\n', content)
            content = content.replace("\t", "\\t")
            return f'"{content}"'

        return re.sub(r'(?<!\\)"((?:[^"\\]|\\.)*?)"', fix, json_str, flags=re.DOTALL)

    def load_fault_tolerant_json(self, json_str: str) -> Optional[Any]:
        """
        commentjson first, then YAML over a sanitized copy, then json_repair.
        Returns None when nothing yields a structured value.
        """
        def load(text: str) -> Tuple[Optional[Any], str]:
            err = ""
            try:
                return commentjson.loads(self.clean_triple_backticks(text)), ""
            except Exception as e:
                err = str(e)
            try:
                data = yaml.safe_load(self._escape_raw_newlines(self.clean_triple_backticks(text)))
                if isinstance(data, (dict, list)):
                    return data, ""
                err += "\n--\nYAML parsing did not yield an object"
            except Exception as e:
                err += "\n--\n" + str(e)
            return None, err

        data, err = load(json_str)
        if data is not None:
            return data
        repaired, r_err = load(repair_json(self.clean_triple_backticks(json_str)))
        if repaired is not None:
            return repaired
        logger.debug("load_fault_tolerant_json failed: %s | %s", err, r_err)
        return None

    def parse_reply(self, reply: str) -> Tuple[str, str]:
        """Returns (explainer, code)."""
        text = (reply or "").strip()
        if not text:
            return "", ""

        unfenced = self.clean_triple_backticks(text).strip()
        if unfenced.startswith("{"):
            data = self.load_fault_tolerant_json(unfenced)
            if isinstance(data, dict):
                code = self._coerce_field_to_str(data.get("code") or data.get("lua") or data.get("source"))
                explainer = self._coerce_field_to_str(data.get("explainer") or data.get("plan"))
                return explainer, code

        match = _LUA_FENCE.search(text)
        if match:
            explainer = (text[: match.start()] + text[match.end():]).strip()
            return explainer, match.group(1).strip()

        return "", unfenced

    def build(self, prompt: str, reply: str) -> Command:
        explainer, code = self.parse_reply(reply)
        if not code:
            logger.warning("Dropping AI reply without Lua code (prompt=%r, reply=%r)", prompt[:80], (reply or "")[:200])
            raise ProviderError("AI reply did not contain any Lua code")

        payload: Dict[str, Any] = {"source": code, "explainer": explainer, "prompt": prompt}
        return Command(type=RUN_LUA, payload=payload)
