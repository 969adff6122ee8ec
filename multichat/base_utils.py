# multichat/base_utils.py


import json
import logging
import re

import commentjson
import yaml
from json_repair import repair_json


logging.basicConfig(
    level=logging.DEBUG,
    format="%(asctime)s | %(levelname)s | %(name)s\n%(message)s\n"
)

logger = logging.getLogger("multichat_backend")


class BaseUtils():

    # -----------------------
    # General Utils
    # -----------------------

    def color_print(self, text, color=None):
        COLOR_CODES = {
            'black': '30', 'red': '31', 'green': '32', 'yellow': '33', 'blue': '34', 'magenta': '35',
            'cyan': '36', 'white': '37', 'bright_black': '90', 'bright_red': '91', 'bright_green': '92',
            'bright_yellow': '93', 'bright_blue': '94', 'bright_magenta': '95', 'bright_cyan': '96', 'bright_white': '97'
        }
        if color and color.lower() in COLOR_CODES:
            color_code = COLOR_CODES[color.lower()]
            start = f"\033[{color_code}m"
            end = "\033[0m"
            text = f"{start}{text}{end}"
        logger.info(str(text))
        return False

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

    def unsafe_string_format(self, dest_string, print_unused_keys_report=True, **kwargs):
        """
        Formats a destination string by replacing placeholders with corresponding values from kwargs.

        it works differently from the standard "format" method as instead of looking for all the potential keys, looks only for the keys as passed in kwargs.
        Braces that are not placeholders (JSON examples inside prompts) are left untouched.
        """
        missing_keys = []

        def replacer(match):
            key = match.group(1)
            if key in kwargs:
                return str(kwargs[key])
            else:
                missing_keys.append(key)
                return match.group(0)  # Leave the placeholder unchanged

        pattern = re.compile(r'\{(\w+)\}')
        result = pattern.sub(replacer, dest_string)
        if missing_keys and print_unused_keys_report:
            logger.info(f"\033[93m\033[3mMissing keys within string-to-format in unsafe_string_format: {', '.join(missing_keys)}\033[0m")
        return result

    def load_fault_tolerant_json(self, json_str):
        """
        Loads JSON produced by an LLM.
        Tries commentjson first, then pyyaml, then json_repair.
        Returns None when nothing usable can be recovered.
        """
        if not json_str or not str(json_str).strip():
            return None
        cleaned = self.clean_triple_backticks(str(json_str)).strip()

        try:
            return commentjson.loads(cleaned)
        except Exception:
            pass

        try:
            data = yaml.safe_load(cleaned)
            if isinstance(data, (dict, list)):
                return data
        except yaml.YAMLError:
            pass

        repaired_json_str = repair_json(cleaned)
        try:
            data = json.loads(repaired_json_str)
        except json.JSONDecodeError:
            return None
        return data if isinstance(data, (dict, list)) else None

    def _approx_tokens(self, text: str) -> int:
        return max(1, len(text or "") // 4)
