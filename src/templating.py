"""Manifest rendering.

Templates are Jinja2 text with strict undefined handling and a small function
library for YAML manifests:

    image: quay.io/maistra/proxy:{{ perArch("x86-tag", "p-tag", "z-tag", "arm-tag") }}
    values:
      {{ indent(2, toYaml(values)) }}
    {% for i in until(3) %}- member-{{ i }}
    {% endfor %}

Rendering is deterministic and touches nothing but the template source.
"""

import dataclasses
import logging
from pathlib import Path
from typing import Any, Mapping, Optional

import jinja2
import yaml

from config import get_base_dir
from errors import MarshalError, MeshError, MissingArchImage, TemplateError, UnknownArchitecture

logger = logging.getLogger(__name__)

ARCH_INDEX = {
    'x86': 0,
    'p': 1,
    'z': 2,
    'arm': 3,
}


def to_yaml(value: Any) -> str:
    """Serialize a value to canonical block-style YAML."""
    if isinstance(value, jinja2.Undefined):
        raise TemplateError("toYaml was passed an undefined value")
    try:
        text = yaml.safe_dump(value, default_flow_style=False, sort_keys=True)
    except yaml.YAMLError as e:
        raise MarshalError(f"Unable to marshal {value!r}: {e}") from e
    if text.endswith('\n...\n'):
        # Scalars get an explicit document end marker
        text = text[:-len('...\n')]
    return text


def indent(spaces: int, text: str) -> str:
    """Indent every line but the first by `spaces` spaces."""
    pad = ' ' * spaces
    lines = text.split('\n')
    return '\n'.join([lines[0]] + [pad + line for line in lines[1:]])


def until(n: int) -> list[int]:
    """Integers 0..n-1 for template loops."""
    return list(range(n))


def per_arch(arch: str, *images: str) -> str:
    """Pick the image for `arch` from (x86, p, z, arm) positional variants."""
    if arch not in ARCH_INDEX:
        raise UnknownArchitecture(f"unknown architecture: {arch}")
    index = ARCH_INDEX[arch]
    if index >= len(images):
        raise MissingArchImage(
            f"no image specified for {arch} in perArch function call "
            f"(should be specified as parameter #{index})"
        )
    return images[index]


def _environment(arch: str, templates_dir: Optional[Path] = None) -> jinja2.Environment:
    loader = jinja2.FileSystemLoader(str(templates_dir)) if templates_dir else None
    env = jinja2.Environment(
        loader=loader,
        undefined=jinja2.StrictUndefined,
        keep_trailing_newline=True,
        autoescape=False,
    )
    env.globals.update({
        'toYaml': to_yaml,
        'indent': indent,
        'until': until,
        'perArch': lambda *images: per_arch(arch, *images),
    })
    env.filters['toYaml'] = to_yaml
    return env


def _context(parameters: Any) -> dict:
    if parameters is None:
        return {}
    if dataclasses.is_dataclass(parameters) and not isinstance(parameters, type):
        return dataclasses.asdict(parameters)
    if isinstance(parameters, Mapping):
        return dict(parameters)
    raise TemplateError(f"Template parameters must be a mapping or dataclass, got {type(parameters).__name__}")


def add_line_numbers(source: str) -> str:
    """Prefix each template line with its number for error messages."""
    return ''.join(f"{i:3d}: {line}\n" for i, line in enumerate(source.splitlines(), 1))


def render(template_source: str, parameters: Any = None, arch: str = 'x86') -> str:
    """Render template text with parameters.

    Raises:
        TemplateError: invalid syntax, undefined field, or any other error
            raised while executing the template
        MarshalError, UnknownArchitecture, MissingArchImage: function library misuse
    """
    env = _environment(arch)
    try:
        template = env.from_string(template_source)
    except jinja2.TemplateSyntaxError as e:
        raise TemplateError(f"could not parse template (line {e.lineno}): {e.message}",
                            output=add_line_numbers(template_source)) from e
    return _render(template, parameters, template_source)


def render_template(name: str, parameters: Any = None, arch: str = 'x86',
                    templates_dir: Optional[Path] = None) -> str:
    """Load a named template from templates_dir and render it."""
    if templates_dir is None:
        templates_dir = get_base_dir() / 'templates'
    env = _environment(arch, templates_dir)
    try:
        template = env.get_template(name)
    except jinja2.TemplateNotFound as e:
        raise TemplateError(f"template not found: {name} (in {templates_dir})") from e
    except jinja2.TemplateSyntaxError as e:
        raise TemplateError(f"could not parse template {name} (line {e.lineno}): {e.message}") from e
    except (OSError, UnicodeDecodeError) as e:
        raise TemplateError(f"could not read template {name}: {e}") from e
    logger.debug(f"Rendering template {name} (arch={arch})")
    return _render(template, parameters, Path(template.filename).read_text(encoding='utf-8'))


def _render(template: jinja2.Template, parameters: Any, source: str = '') -> str:
    context = _context(parameters)
    try:
        return template.render(**context)
    except MeshError:
        raise
    except jinja2.UndefinedError as e:
        raise TemplateError(f"could not execute template: {e.message}",
                            output=add_line_numbers(source)) from e
    except jinja2.TemplateError as e:
        raise TemplateError(f"could not execute template: {e}",
                            output=add_line_numbers(source)) from e
    except Exception as e:
        # Template text is untrusted: any runtime error is a render failure
        raise TemplateError(f"could not execute template: {type(e).__name__}: {e}",
                            output=add_line_numbers(source)) from e
