from __future__ import annotations

from html import escape


def render_homepage(*, app_name: str = "paygent") -> str:
    title = escape(app_name)
    return f"""
<!doctype html>
<html lang="en">
<head>
  <meta charset="utf-8">
  <meta name="viewport" content="width=device-width, initial-scale=1">
  <title>{title} console</title>
  <style>
    :root {{
      --bg: #10151c;
      --panel: #18202a;
      --ink: #e8edf2;
      --muted: #8a98a8;
      --accent: #f7931a;
      --ok: #3ccf91;
      --fail: #ff5c6c;
      --line: #2a3542;
    }}
    * {{ box-sizing: border-box; }}
    body {{
      margin: 0;
      font-family: ui-sans-serif, system-ui, sans-serif;
      background: var(--bg);
      color: var(--ink);
    }}
    main {{ max-width: 960px; margin: 24px auto; padding: 0 16px; display: grid; gap: 16px; }}
    section {{ background: var(--panel); border: 1px solid var(--line); border-radius: 12px; padding: 16px; }}
    h1 {{ margin: 0 0 4px; font-size: 1.5rem; }}
    h1 span {{ color: var(--accent); }}
    p.lede {{ margin: 0; color: var(--muted); }}
    form {{ display: grid; grid-template-columns: 1fr 120px 90px auto auto; gap: 8px; }}
    input, button {{
      font: inherit; padding: 9px 10px; border-radius: 8px;
      border: 1px solid var(--line); background: var(--bg); color: var(--ink);
    }}
    button {{ background: var(--accent); color: #111; border: none; cursor: pointer; font-weight: 600; }}
    button.secondary {{ background: transparent; color: var(--ink); border: 1px solid var(--line); }}
    ol#steps {{ margin: 0; padding-left: 20px; }}
    ol#steps li {{ margin: 4px 0; }}
    .completed {{ color: var(--ok); }}
    .failed {{ color: var(--fail); }}
    .running {{ color: var(--accent); }}
    pre {{
      margin: 0; max-height: 320px; overflow: auto; font-size: 0.82rem;
      font-family: ui-monospace, monospace; white-space: pre-wrap;
    }}
    #spend {{ color: var(--muted); font-size: 0.9rem; }}
  </style>
</head>
<body>
  <main>
    <section>
      <h1><span>{title}</span> pipeline console</h1>
      <p class="lede">Describe a task. It is planned into paid service calls and run step by step.</p>
    </section>
    <section>
      <form id="run-form">
        <input id="query" placeholder="Summarize today's news and tweet it" required>
        <input id="budget" type="number" min="0" placeholder="budget (uSTX)">
        <input id="max-steps" type="number" min="1" placeholder="steps">
        <button type="submit">Run</button>
        <button type="button" class="secondary" id="preview">Preview</button>
      </form>
      <p id="spend"></p>
    </section>
    <section>
      <strong id="status">idle</strong>
      <ol id="steps"></ol>
    </section>
    <section>
      <pre id="log"></pre>
    </section>
  </main>
  <script>
    const logEl = document.getElementById("log");
    const stepsEl = document.getElementById("steps");
    const statusEl = document.getElementById("status");
    let currentPipeline = null;

    function body() {{
      const payload = {{ query: document.getElementById("query").value }};
      const budget = document.getElementById("budget").value;
      const maxSteps = document.getElementById("max-steps").value;
      if (budget) payload.budget = Number(budget);
      if (maxSteps) payload.max_steps = Number(maxSteps);
      return payload;
    }}

    async function post(url, payload) {{
      const response = await fetch(url, {{
        method: "POST",
        headers: {{ "Content-Type": "application/json" }},
        body: JSON.stringify(payload),
      }});
      return response.json();
    }}

    async function refreshSpend() {{
      const summary = await (await fetch("/api/spending")).json();
      document.getElementById("spend").textContent =
        `today ${{summary.today.total}} uSTX / remaining ${{summary.limits.remaining_today}} uSTX`;
    }}

    function renderSteps(steps) {{
      stepsEl.innerHTML = "";
      for (const step of steps) {{
        const li = document.createElement("li");
        li.id = `step-${{step.id}}`;
        li.textContent = `${{step.description}} (${{step.estimated_cost}} uSTX)`;
        stepsEl.appendChild(li);
      }}
    }}

    function markStep(stepId, state) {{
      const li = document.getElementById(`step-${{stepId}}`);
      if (li) li.className = state;
    }}

    document.getElementById("run-form").addEventListener("submit", async (event) => {{
      event.preventDefault();
      stepsEl.innerHTML = "";
      const result = await post("/api/pipeline/execute", body());
      currentPipeline = result.pipeline_id;
      statusEl.textContent = `started ${{currentPipeline}}`;
    }});

    document.getElementById("preview").addEventListener("click", async () => {{
      const preview = await post("/api/pipeline/preview", body());
      renderSteps(preview.steps || []);
      statusEl.textContent = preview.can_afford
        ? `preview: ${{preview.estimated_total_cost}} uSTX`
        : `preview: ${{preview.reason}}`;
    }});

    const socket = new WebSocket(`${{location.protocol === "https:" ? "wss" : "ws"}}://${{location.host}}/ws`);
    socket.onmessage = (message) => {{
      const event = JSON.parse(message.data);
      logEl.textContent = `${{JSON.stringify(event)}}\\n` + logEl.textContent;
      if (!currentPipeline || event.pipeline_id !== currentPipeline) return;
      const data = event.data || {{}};
      if (event.event === "pipeline:planned") renderSteps(data.steps);
      if (event.event === "pipeline:step:started") markStep(data.step_id, "running");
      if (event.event === "pipeline:step:completed") markStep(data.step_id, "completed");
      if (event.event === "pipeline:step:failed") markStep(data.step_id, "failed");
      if (event.event === "pipeline:completed" || event.event === "pipeline:failed") {{
        statusEl.textContent = event.event === "pipeline:completed" ? "complete" : `failed: ${{data.error}}`;
        refreshSpend();
      }}
    }};
    refreshSpend();
  </script>
</body>
</html>
"""
