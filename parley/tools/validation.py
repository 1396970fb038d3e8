import jsonschema

from parley.tools.base import Tool, normalize_schema


class ToolValidator:
    @staticmethod
    def validate(tool: Tool, arguments: dict) -> tuple[bool, str | None]:
        try:
            jsonschema.validate(
                instance=arguments,
                schema=normalize_schema(tool.parameters),
            )
            return True, None
        except jsonschema.ValidationError as e:
            path = ".".join(str(p) for p in e.absolute_path)
            return False, f"{path}: {e.message}" if path else str(e.message)

    @staticmethod
    def apply_defaults(tool: Tool, arguments: dict) -> dict:
        """Fill top-level ``default`` values the model left out."""
        props = normalize_schema(tool.parameters).get("properties", {})
        filled = dict(arguments)
        for key, prop in props.items():
            if key not in filled and "default" in prop:
                filled[key] = prop["default"]
        return filled
