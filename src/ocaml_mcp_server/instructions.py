INSTRUCTIONS = """## Workflow
- You are connected to the `ocaml_mcp_server` server for an OCaml project built with dune.
- Start with `dune_build_status` to see whether the project compiles; errors are always listed before warnings.
- Narrow large result sets with `severity_filter` (`error`, `warning`, `all`) and `file_pattern` before paging.
- Use `dune_build_target` to build specific targets (`@runtest`, `bin/main.exe`, `@fmt`) and read the raw dune output.
- This MCP never edits source files; coordinate with an external editor for changes, then re-run `dune_build_status`.

## Tool Cheatsheet
- `dune_build_status`: Build status plus one page of diagnostics, filtered and prioritized.
- `dune_build_target`: Run `dune build <targets>` and return the combined output.
- `dune_project_structure`: Local libraries and executables with their directories, modules and dependencies.
- `ocaml_tool_spec`: Export the current tool metadata for auditing.

## Paging and Token Limits
- Every `dune_build_status` response stays under an estimated 25,000 tokens; `token_count` reports the estimate.
- `max_diagnostics` (1-1000, default 50) is the page size and `page` is zero-based.
- When `next_cursor` is set, pass it back as `page` with the same filters to continue.
- A `truncation_reason` mentioning the token limit means the page was cut short; it names a `page=P max_diagnostics=K` pair, and requesting exactly that resumes right after the last returned diagnostic.
- `summary.error_count` and `summary.warning_count` cover every diagnostic matching the filters, not just the current page.

## File Patterns
- `*` and `?` never cross `/`; `**` as a whole segment spans directories (`src/**/*.ml`).
- Patterns without `/` match the file name only, so `*.mli` selects interfaces anywhere in the project and `main.ml` matches `src/main.ml`.
- Patterns with `/` must match the whole project-relative path; `src/main.ml` does not match `lib/src/main.ml`.
- Patterns are limited to 200 characters and 10 `*` wildcards.
"""
