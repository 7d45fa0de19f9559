from releasegate.templates import TemplateContext, render, render_env


def test_render_substitutes_known_placeholders() -> None:
    context = TemplateContext(repo_tag="v1.2.3", repo_url="git@example.com:org/app.git")
    rendered = render("deploy {{ .RepoTag }} from {{.RepoUrl}}", context.as_vars())
    assert rendered == "deploy v1.2.3 from git@example.com:org/app.git"


def test_unknown_placeholder_renders_empty() -> None:
    assert render("echo [{{ .NoSuchKey }}]", TemplateContext().as_vars()) == "echo []"


def test_failed_names_are_scoped_copies() -> None:
    context = TemplateContext(repo_tag="v1.0.0")
    failed = context.with_failed_task("deploy").with_failed_quorum("maintainers")

    assert context.failed_task_name == ""
    assert failed.as_vars()["FailedTaskName"] == "deploy"
    assert failed.as_vars()["FailedQuorumName"] == "maintainers"


def test_render_env_uppercases_keys_and_renders_values() -> None:
    env = render_env({"release_tag": "{{ .RepoTag }}"}, TemplateContext(repo_tag="v2").as_vars())
    assert env == {"RELEASE_TAG": "v2"}


def test_pipeline_expression_stays_literal() -> None:
    text = 'echo {{ .RepoTag | printf "%s" }} {{ .RepoTag }}'
    rendered = render(text, TemplateContext(repo_tag="v1.0.0").as_vars())
    assert rendered == 'echo {{ .RepoTag | printf "%s" }} v1.0.0'
