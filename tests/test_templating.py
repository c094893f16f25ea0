#!/usr/bin/env python3
"""Tests for templating.py - manifest rendering and the function library."""

import sys
from dataclasses import dataclass
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

import pytest
import yaml
from errors import MarshalError, MissingArchImage, TemplateError, UnknownArchitecture
from templating import add_line_numbers, indent, per_arch, render, render_template, to_yaml, until

TEMPLATES_DIR = Path(__file__).parent.parent / 'templates'


class TestPerArch:
    """Test per_arch() image selection."""

    def test_x86_picks_first(self):
        assert per_arch('x86', 'img-x86', 'img-p', 'img-z') == 'img-x86'

    def test_arm_picks_fourth(self):
        assert per_arch('arm', 'a', 'b', 'c', 'd') == 'd'

    def test_z_picks_third(self):
        assert per_arch('z', 'a', 'b', 'c') == 'c'

    def test_missing_image_for_arch(self):
        """Too few images for the arch position raises MissingArchImage."""
        with pytest.raises(MissingArchImage) as exc_info:
            per_arch('arm', 'a', 'b')
        assert 'arm' in exc_info.value.message
        assert 'parameter #3' in exc_info.value.message

    def test_p_picks_second(self):
        assert per_arch('p', 'a', 'b', 'c', 'd') == 'b'

    def test_z_with_two_images(self):
        with pytest.raises(MissingArchImage):
            per_arch('z', 'a', 'b')

    def test_unknown_arch(self):
        with pytest.raises(UnknownArchitecture):
            per_arch('sparc', 'a', 'b', 'c', 'd')


class TestToYaml:
    """Test to_yaml() serialization."""

    def test_keys_sorted_block_style(self):
        assert to_yaml({'b': 1, 'a': {'c': 2}}) == 'a:\n  c: 2\nb: 1\n'

    def test_list(self):
        assert to_yaml(['x', 'y']) == '- x\n- y\n'

    def test_scalar_has_no_document_marker(self):
        assert to_yaml(5) == '5\n'

    def test_unserializable_value(self):
        with pytest.raises(MarshalError):
            to_yaml(object())


class TestIndent:
    """Test indent()."""

    def test_three_lines(self):
        assert indent(2, 'a\nb\nc') == 'a\n  b\n  c'

    def test_first_line_untouched(self):
        assert indent(2, 'a: 1\nb: 2') == 'a: 1\n  b: 2'

    def test_trailing_newline_line_is_padded(self):
        assert indent(4, 'a\nb\n') == 'a\n    b\n    '

    def test_single_line(self):
        assert indent(8, 'only') == 'only'


class TestUntil:
    def test_range(self):
        assert until(3) == [0, 1, 2]

    def test_zero(self):
        assert until(0) == []

    def test_serializes_with_to_yaml(self):
        assert render('{{ toYaml(until(3)) }}', {}) == '- 0\n- 1\n- 2\n'


class TestRender:
    """Test render() with inline template text."""

    def test_substitutes_parameters(self):
        assert render('name: {{ Name }}', {'Name': 'basic'}) == 'name: basic'

    def test_dataclass_parameters(self):
        @dataclass
        class Params:
            Name: str
            Namespace: str

        text = render('{{ Namespace }}/{{ Name }}', Params('basic', 'istio-system'))
        assert text == 'istio-system/basic'

    def test_per_arch_uses_render_arch(self):
        template = 'image: {{ perArch("img-x86", "img-p", "img-z", "img-arm") }}'
        assert render(template, {}, arch='p') == 'image: img-p'
        assert render(template, {}, arch='x86') == 'image: img-x86'

    def test_per_arch_missing_image_propagates(self):
        with pytest.raises(MissingArchImage):
            render('{{ perArch("a") }}', {}, arch='z')

    def test_to_yaml_and_indent_compose(self):
        template = 'spec:\n  values:\n    {{ indent(4, toYaml(values)) }}'
        text = render(template, {'values': {'global': {'proxy': 'on'}, 'enabled': True}})
        assert yaml.safe_load(text) == {'spec': {'values': {'enabled': True, 'global': {'proxy': 'on'}}}}

    def test_to_yaml_filter(self):
        assert render('{{ value | toYaml }}', {'value': {'k': 'v'}}) == 'k: v\n'

    def test_until_loop(self):
        assert render('{% for i in until(3) %}m{{ i }} {% endfor %}', {}) == 'm0 m1 m2 '

    def test_deterministic(self):
        template = '{{ toYaml(values) }}'
        params = {'values': {'z': 1, 'a': [1, 2], 'm': {'y': 'x'}}}
        assert render(template, params) == render(template, params)

    def test_undefined_field(self):
        """Referencing a field the parameters do not have is a TemplateError."""
        with pytest.raises(TemplateError) as exc_info:
            render('name: {{ Missing }}', {'Name': 'basic'})
        assert 'Missing' in exc_info.value.message

    def test_undefined_passed_to_to_yaml(self):
        with pytest.raises(TemplateError):
            render('{{ toYaml(Missing) }}', {})

    def test_syntax_error_includes_numbered_source(self):
        with pytest.raises(TemplateError) as exc_info:
            render('a: 1\nb: {{ Name\n', {'Name': 'x'})
        assert 'could not parse template' in exc_info.value.message
        assert '  2: b: {{ Name' in exc_info.value.output

    @pytest.mark.parametrize('template', [
        '{{ Name + 1 }}',
        '{{ until("a") }}',
        '{{ indent(2, 5) }}',
    ])
    def test_runtime_error_is_template_error(self, template):
        """Errors raised while executing template code become TemplateError."""
        with pytest.raises(TemplateError) as exc_info:
            render(template, {'Name': 'basic'})
        assert 'could not execute template' in exc_info.value.message
        assert template in exc_info.value.output

    def test_unknown_arch_without_per_arch(self):
        assert render('name: {{ Name }}', {'Name': 'basic'}, arch='power') == 'name: basic'

    def test_unknown_arch_with_per_arch(self):
        with pytest.raises(UnknownArchitecture):
            render('image: {{ perArch("a", "b", "c", "d") }}', {}, arch='power')

    def test_non_mapping_parameters(self):
        with pytest.raises(TemplateError):
            render('{{ x }}', ['not', 'a', 'mapping'])


class TestRenderTemplate:
    """Test render_template() loading from a directory."""

    def test_renders_file(self, tmp_path):
        (tmp_path / 'cm.yaml.j2').write_text('name: {{ Name }}\n')
        assert render_template('cm.yaml.j2', {'Name': 'x'}, templates_dir=tmp_path) == 'name: x\n'

    def test_missing_template(self, tmp_path):
        with pytest.raises(TemplateError) as exc_info:
            render_template('nope.yaml.j2', {}, templates_dir=tmp_path)
        assert 'nope.yaml.j2' in exc_info.value.message

    def test_runtime_error_lists_file_source(self, tmp_path):
        (tmp_path / 'bad.yaml.j2').write_text('kind: ServiceMeshControlPlane\nname: {{ Name + 1 }}\n')
        with pytest.raises(TemplateError) as exc_info:
            render_template('bad.yaml.j2', {'Name': 'basic'}, templates_dir=tmp_path)
        assert '  2: name: {{ Name + 1 }}' in exc_info.value.output

    @pytest.mark.parametrize('version', ['2.1', '2.2', '2.3'])
    def test_smcp_templates(self, version):
        """Shipped control-plane templates render to valid manifests."""
        text = render_template(f'smcp-v{version}.yaml.j2', {'Name': 'basic', 'Namespace': 'istio-system'},
                               templates_dir=TEMPLATES_DIR)
        manifest = yaml.safe_load(text)
        assert manifest['kind'] == 'ServiceMeshControlPlane'
        assert manifest['metadata'] == {'name': 'basic', 'namespace': 'istio-system'}
        assert manifest['spec']['version'] == f'v{version}'

    def test_member_roll_template(self):
        text = render_template('smmr.yaml.j2', {'Namespace': 'istio-system', 'Members': ['bookinfo', 'foo']},
                               templates_dir=TEMPLATES_DIR)
        manifest = yaml.safe_load(text)
        assert manifest['kind'] == 'ServiceMeshMemberRoll'
        assert manifest['spec']['members'] == ['bookinfo', 'foo']


def test_add_line_numbers():
    assert add_line_numbers('a\nb') == '  1: a\n  2: b\n'
