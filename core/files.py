"""Merging of template and generated files."""


def all_files(state):
    """Template files not overridden by a generated file, followed by the generated files."""
    generated = state.generated_files
    merged = [f for f in state.template.files if f.file_path not in generated]
    merged.extend(generated.values())
    return merged


def get_file(state, path):
    """Last known version of ``path``: generated first, then template, else None."""
    if path in state.generated_files:
        return state.generated_files[path]
    for f in state.template.files:
        if f.file_path == path:
            return f
    return None


def file_contents(state, path):
    f = get_file(state, path)
    return f.file_contents if f is not None else None
