# vibe-review - Review Convergence Engine
#
# This package drives repeated AI review rounds over a pull request until the
# review converges, then keeps the GitHub tracker (follow-up issue, review
# threads, summary comment) consistent with the outcome. Each stage is in its
# own file following the one-public-function-per-file pattern.
#
# The pipeline is orchestrated by review_pipeline_main.py. It calls an
# external reviewing agent (a shell command or Gemini) once per attempt and
# talks to GitHub through github_api.GitHubAPI.
#
# Stage flow:
#   1. Run Attempts -> 2. Reconcile Lifecycle -> 3. Follow-up Issue
#   -> 4. Review Threads -> 5. Publish Review
