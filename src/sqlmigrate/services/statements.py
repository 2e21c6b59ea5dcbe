"""Splitting migration files into executable statements."""

STATEMENT_SEPARATOR = ";"
COMMENT_MARKER = "--"


def split_statements(content: str) -> list[str]:
    """Split file content into the statements that will be executed.

    Fragments between separators are trimmed; empty fragments and fragments
    that begin with a line comment are dropped. Indexes into the returned
    list are the checkpoint indexes.
    """
    statements = []
    for fragment in content.split(STATEMENT_SEPARATOR):
        fragment = fragment.strip()
        if not fragment or fragment.startswith(COMMENT_MARKER):
            continue
        statements.append(fragment)
    return statements
