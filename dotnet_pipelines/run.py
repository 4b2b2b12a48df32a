from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from .auth import CredentialSet, is_external_caller
from .catalog import TemplateCatalog
from .config import Settings, load_settings
from .errors import CatalogError, ConfigurationError, PipelineError
from .generator import write_workflows
from .runner import RunContext, TemplateRunner
from .validator import validate_invocation, validate_workflow_file

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_CONFIGURATION = 2


def _load_settings(args: argparse.Namespace) -> Settings:
    return load_settings(args.root)


def _load_catalog(args: argparse.Namespace, settings: Settings) -> TemplateCatalog:
    path = args.catalog or settings.catalog
    if path:
        return TemplateCatalog.from_file(Path(args.root) / path)
    return TemplateCatalog.default()


def _parse_inputs(pairs: Sequence[str]) -> Dict[str, str]:
    inputs: Dict[str, str] = {}
    for pair in pairs:
        name, sep, value = pair.partition("=")
        if not sep or not name:
            raise ConfigurationError(f"Inputs are given as name=value, got '{pair}'")
        inputs[name] = value
    return inputs


def _read_secrets(names: Sequence[str]) -> Dict[str, Optional[str]]:
    """Secrets come from the environment; ``NAME=VAR`` reads ``VAR`` for ``NAME``."""

    secrets: Dict[str, Optional[str]] = {}
    for entry in names:
        name, _, variable = entry.partition("=")
        secrets[name] = os.environ.get(variable or name)
    return secrets


def _caller_repository(args: argparse.Namespace) -> Optional[str]:
    return args.caller_repository or os.environ.get("GITHUB_REPOSITORY")


def cmd_list(args: argparse.Namespace) -> int:
    settings = _load_settings(args)
    catalog = _load_catalog(args, settings)
    for template in catalog.iter_templates():
        print(f"{template.id}\t{template.kind}\t{template.description}")
    return EXIT_OK


def cmd_show(args: argparse.Namespace) -> int:
    settings = _load_settings(args)
    template = _load_catalog(args, settings).get(args.template_id)
    data = template.to_dict()
    data["uses"] = settings.template_reference(template.workflow_file)
    print(json.dumps(data, indent=2))
    return EXIT_OK


def cmd_generate(args: argparse.Namespace) -> int:
    settings = _load_settings(args)
    catalog = _load_catalog(args, settings)
    output = Path(args.root) / (args.output or settings.workflows_dir)
    for path in write_workflows(catalog, settings, output, args.template):
        print(path)
    return EXIT_OK


def cmd_validate(args: argparse.Namespace) -> int:
    settings = _load_settings(args)
    template = _load_catalog(args, settings).get(args.template)
    invocation = validate_invocation(
        template,
        _parse_inputs(args.input),
        _read_secrets(args.secret),
        caller_repository=_caller_repository(args),
        template_repository=settings.template_repository,
        checkout=args.checkout,
    )
    summary = {"template": template.id, "inputs": invocation.inputs, "secrets": invocation.credentials.names()}
    if invocation.auth is not None:
        summary["auth_mode"] = invocation.auth.mode.value
    print(json.dumps(summary, indent=2))
    return EXIT_OK


def cmd_validate_workflow(args: argparse.Namespace) -> int:
    settings = _load_settings(args)
    catalog = _load_catalog(args, settings)
    status = EXIT_OK
    for path in args.paths:
        reports = validate_workflow_file(path, catalog, settings, caller_repository=_caller_repository(args))
        if not reports:
            print(f"{path}: no template invocations found")
        for report in reports:
            if report.ok:
                print(f"{path}: job '{report.job_id}' ({report.template_id}) ok")
                continue
            status = EXIT_CONFIGURATION
            for error in report.errors:
                print(f"{path}: job '{report.job_id}' ({report.template_id}): {error}", file=sys.stderr)
    return status


def cmd_resolve_auth(args: argparse.Namespace) -> int:
    settings = _load_settings(args)
    catalog = _load_catalog(args, settings)
    template = catalog.get(args.template)
    if template.auth is None:
        raise ConfigurationError(f"Template '{template.id}' does not publish and has no authentication policy")
    variables = {template.auth.api_key_secret: args.api_key_env, template.auth.oidc_secret: args.oidc_user_env}
    names = [
        f"{spec.name}={variables[spec.name]}" if variables.get(spec.name) else spec.name for spec in template.secrets
    ]
    credentials = CredentialSet.from_mapping(_read_secrets(names), template)
    external = is_external_caller(_caller_repository(args), settings.template_repository)
    selection = credentials.resolve(template.auth, is_external_caller=external, prefer_oidc=args.prefer_oidc)
    print(json.dumps({"mode": selection.mode.value, "external_caller": external}))
    return EXIT_OK


def cmd_run(args: argparse.Namespace) -> int:
    settings = _load_settings(args)
    catalog = _load_catalog(args, settings)
    template = catalog.get(args.template_id)
    context = RunContext(
        checkout=Path(args.checkout),
        workspace=Path(args.root) / settings.workspace,
        caller_repository=_caller_repository(args),
        template_repository=settings.template_repository,
        event_path=os.environ.get("GITHUB_EVENT_PATH"),
        push=not args.no_push,
    )
    runner = TemplateRunner(context, catalog)
    secrets = _read_secrets(args.secret or [spec.name for spec in template.secrets])
    result = runner.run(template.id, _parse_inputs(args.input), secrets)
    print(json.dumps(result.to_dict(), indent=2))
    return EXIT_OK


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Reusable CI pipeline templates for .NET projects")
    parser.add_argument("--root", default=".", help="Directory holding the settings files.")
    parser.add_argument("--catalog", default=None, help="Template catalog file (defaults to the bundled catalog).")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging.")
    subparsers = parser.add_subparsers(dest="command", required=True)

    list_parser = subparsers.add_parser("list", help="List templates in the catalog")
    list_parser.set_defaults(func=cmd_list)

    show_parser = subparsers.add_parser("show", help="Print a template's inputs, secrets and outputs")
    show_parser.add_argument("template_id")
    show_parser.set_defaults(func=cmd_show)

    generate_parser = subparsers.add_parser("generate", help="Write reusable workflow files")
    generate_parser.add_argument("--output", default=None, help="Output directory (defaults to workflows_dir).")
    generate_parser.add_argument("--template", action="append", default=[], help="Only generate this template.")
    generate_parser.set_defaults(func=cmd_generate)

    validate_parser = subparsers.add_parser("validate", help="Validate an invocation of a template")
    validate_parser.add_argument("--template", required=True)
    validate_parser.add_argument("--input", action="append", default=[], metavar="NAME=VALUE")
    validate_parser.add_argument(
        "--secret", action="append", default=[], metavar="NAME[=ENV_VAR]", help="Secret read from the environment."
    )
    validate_parser.add_argument("--checkout", default=None, help="Checkout the path inputs must resolve within.")
    validate_parser.add_argument("--caller-repository", default=None, help="owner/repo of the calling repository.")
    validate_parser.set_defaults(func=cmd_validate)

    workflow_parser = subparsers.add_parser("validate-workflow", help="Validate template invocations in workflows")
    workflow_parser.add_argument("paths", nargs="+")
    workflow_parser.add_argument("--caller-repository", default=None)
    workflow_parser.set_defaults(func=cmd_validate_workflow)

    auth_parser = subparsers.add_parser("resolve-auth", help="Select the publish authentication mode")
    auth_parser.add_argument("--template", default="dotnet-publish")
    auth_parser.add_argument("--api-key-env", default=None, metavar="VAR", help="Read the API key from VAR")
    auth_parser.add_argument("--oidc-user-env", default=None, metavar="VAR", help="Read the OIDC user from VAR")
    auth_parser.add_argument("--caller-repository", default=None)
    auth_parser.add_argument("--prefer-oidc", action="store_true")
    auth_parser.set_defaults(func=cmd_resolve_auth)

    run_parser = subparsers.add_parser("run", help="Run a template's steps against a local checkout")
    run_parser.add_argument("template_id")
    run_parser.add_argument("--input", action="append", default=[], metavar="NAME=VALUE")
    run_parser.add_argument("--secret", action="append", default=[], metavar="NAME[=ENV_VAR]")
    run_parser.add_argument("--checkout", default=".")
    run_parser.add_argument("--caller-repository", default=None)
    run_parser.add_argument("--no-push", action="store_true", help="Commit formatting fixes without pushing.")
    run_parser.set_defaults(func=cmd_run)

    return parser


def main(argv: List[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(levelname)s %(name)s: %(message)s",
    )
    try:
        return args.func(args)
    except (ConfigurationError, CatalogError) as exc:
        print(f"error: {exc}", file=sys.stderr)
        return EXIT_CONFIGURATION
    except PipelineError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return EXIT_FAILURE


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
