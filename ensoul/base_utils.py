# ensoul/base_utils.py


import logging
import re

import commentjson
import yaml
from json_repair import repair_json


logger = logging.getLogger("ensoul_backend")


class BaseUtils():

    # -----------------------
    # General Utils
    # -----------------------

    def clean_triple_backticks(self, code) -> str:
        pattern = r'```[a-zA-Z]*\n?|```\n?'
        return re.sub(pattern, '', code)

    def unsafe_string_format(self, dest_string, print_unused_keys_report=True, **kwargs):
        """
        Formats a destination string by replacing placeholders with corresponding values from kwargs.

        it works differently from the standard "format" method as instead of looking for all the potential keys,
        looks only for the keys as passed in kwargs, so JSON braces in prompts survive untouched.
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
            logger.debug(f"Missing keys within string-to-format in unsafe_string_format: {', '.join(missing_keys)}")
        return result

    def load_fault_tolerant_json(self, json_str: str):
        """
        Parse an LLM JSON answer: commentjson first, YAML as a lenient
        second reader, json_repair as the last resort.
        Returns None if nothing yields an object.
        """
        if not json_str:
            return None

        def load_json(raw):
            err, data = "", None
            cleaned = self.clean_triple_backticks(raw).strip()
            # keep only the outermost object if the model wrapped it in prose
            start, end = cleaned.find("{"), cleaned.rfind("}")
            if start != -1 and end > start:
                cleaned = cleaned[start:end + 1]
            try:
                data = commentjson.loads(cleaned)
                if isinstance(data, dict):
                    return data, ""
            except Exception as e:
                err = str(e)
            try:
                data = yaml.safe_load(cleaned)
                if isinstance(data, dict):
                    return data, ""
            except Exception as e:
                err += "\n--\n" + str(e)
            return None, err

        data, err = load_json(json_str)
        if data is not None:
            return data

        r_data, r_err = load_json(repair_json(json_str))
        if r_data is not None:
            return r_data

        logger.warning(f"load_fault_tolerant_json: JSON parsing failed: {err}\n--\n{r_err}")
        return None
